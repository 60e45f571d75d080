from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from calsync.config_manager import ConfigManager
from calsync.models import SyncResult, serialize_datetime
from calsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60


class SyncScheduler:
    """Runs the sync engine on a daemon thread: once at startup, then every interval or on demand."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self.last_result: Optional[SyncResult] = None
        self.next_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def interval_seconds(self) -> int:
        config = self.config_manager.load()
        return max(MIN_INTERVAL_SECONDS, int(config.sync.interval_seconds))

    def status(self) -> dict[str, Any]:
        last = self.last_result
        return {
            "running": self.is_running,
            "next_run_at": serialize_datetime(self.next_run_at),
            "last_result": last.to_dict() if last else None,
        }

    def run_now(self, trigger: str) -> SyncResult:
        result = self.sync_engine.run_once(trigger=trigger)
        self.last_result = result
        logger.info("Sync run (%s) finished with status %s: %s", trigger, result.status, result.message)
        return result

    def _loop(self) -> None:
        self.run_now("startup")

        while not self._stop_event.is_set():
            interval = self.interval_seconds()
            self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=interval)
            manual = self._manual_trigger_event.wait(timeout=interval)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_now("manual" if manual else "scheduled")
        self.next_run_at = None
