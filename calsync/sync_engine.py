from __future__ import annotations

import json
import logging
import re
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calsync.caldav_client import CalDAVService
from calsync.config_manager import ConfigManager
from calsync.events import MalformedEventError
from calsync.gcal_client import GCalService
from calsync.models import (
    AppConfig,
    NativeEvent,
    SourceConfig,
    SourceOccurrence,
    SyncInstructions,
    SyncResult,
    TargetEvent,
    UserConfig,
    serialize_datetime,
    sync_window,
)
from calsync.reconciler import reconcile
from calsync.recurrence import build_occurrences
from calsync.rules import CopyRules
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """A source or target calendar could not be read; the user's sync is aborted."""


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value.strip()) or "user"


def _occurrence_dict(occurrence: SourceOccurrence) -> dict[str, Any]:
    return {
        "source_label": occurrence.source_label,
        "policy": occurrence.policy.__dict__,
        "event": occurrence.event.to_dict(),
    }


def _source_name(source: SourceConfig) -> str:
    return source.label or source.url or source.calendar_id


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._run_lock = threading.Lock()

    def fetch_source_events(
        self, source: SourceConfig, window_start: datetime, window_end: datetime
    ) -> list[NativeEvent]:
        try:
            if source.kind == "caldav":
                return list(CalDAVService(source).fetch_events(window_start, window_end))
            service = GCalService(source.calendar_id, source.token_file)
            return list(service.list_events(window_start, window_end))
        except Exception as exc:
            raise FetchError(f"source {_source_name(source)}: {exc}") from exc

    def fetch_target_events(
        self, service: GCalService, window_start: datetime, window_end: datetime
    ) -> list[TargetEvent]:
        try:
            return service.list_events(window_start, window_end)
        except Exception as exc:
            raise FetchError(f"target {service.calendar_id}: {exc}") from exc

    def sync_user(
        self,
        user: UserConfig,
        config: AppConfig,
        *,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
    ) -> tuple[SyncInstructions, GCalService]:
        """Fetch one user's sources and target and reconcile them. Nothing is written."""
        occurrences: list[SourceOccurrence] = []
        for source in user.sources:
            events = self.fetch_source_events(source, window_start, window_end)
            logger.info("Fetched %d events for %s", len(events), source.label)
            try:
                occurrences.extend(build_occurrences(events, source, window_start, window_end))
            except (ValueError, TypeError, KeyError) as exc:
                raise MalformedEventError(f"source {_source_name(source)}: {exc}") from exc

        target_service = GCalService(user.target.calendar_id, user.target.token_file)
        target_events = self.fetch_target_events(target_service, window_start, window_end)
        if config.sync.dump_dir:
            self._dump_snapshots(config.sync.dump_dir, user, occurrences, target_events)

        instructions = reconcile(
            occurrences,
            target_events,
            rules=CopyRules(config.rules),
            replace_summary=user.replace_summary,
            add_prefix=user.add_prefix,
            fingerprint=config.sync.fingerprint,
            now=now,
            default_timezone=config.sync.timezone,
        )
        counts = instructions.counts()
        logger.info(
            "Sync %s: %d inserts, %d updates, %d deletions",
            user.name,
            counts["insert"],
            counts["update"],
            counts["delete"],
        )
        return instructions, target_service

    def _dump_snapshots(
        self,
        dump_dir: str,
        user: UserConfig,
        occurrences: list[SourceOccurrence],
        target_events: list[TargetEvent],
    ) -> None:
        directory = Path(dump_dir) / _safe_name(user.name)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "source_events.json").write_text(
            json.dumps([_occurrence_dict(item) for item in occurrences], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        (directory / "target_events.json").write_text(
            json.dumps([item.to_dict() for item in target_events], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    def apply(
        self,
        *,
        user: UserConfig,
        service: GCalService,
        instructions: SyncInstructions,
        trigger: str,
        run_id: int | None = None,
    ) -> tuple[int, int]:
        """Issue every instruction independently. Returns ``(applied, failed)``."""
        applied = 0
        failed = 0
        for data in instructions.insert:
            try:
                new_id = service.insert_event(data)
            except Exception as exc:
                failed += 1
                self._record_apply_error(user, "insert", data.summary, exc, trigger, run_id)
                continue
            applied += 1
            self.state_store.record_audit_event(
                user_name=user.name,
                event_ref=new_id,
                action="insert",
                details={"trigger": trigger, "event": data.to_dict()},
                run_id=run_id,
            )

        for update in instructions.update:
            try:
                service.update_event(update.target_id, update.data)
            except Exception as exc:
                failed += 1
                self._record_apply_error(user, "update", update.target_id, exc, trigger, run_id)
                continue
            applied += 1
            self.state_store.record_audit_event(
                user_name=user.name,
                event_ref=update.target_id,
                action="update",
                details={"trigger": trigger, "event": update.data.to_dict()},
                run_id=run_id,
            )

        if not instructions.delete:
            return applied, failed
        failed_deletes = set(service.delete_events_by_ids(list(instructions.delete)))
        for event_id in instructions.delete:
            delete_ok = event_id not in failed_deletes
            if delete_ok:
                applied += 1
            else:
                failed += 1
            self.state_store.record_audit_event(
                user_name=user.name,
                event_ref=event_id,
                action="delete" if delete_ok else "apply_error",
                details={"trigger": trigger, "operation": "delete", "delete_ok": delete_ok},
                run_id=run_id,
            )
        return applied, failed

    def _record_apply_error(
        self,
        user: UserConfig,
        operation: str,
        ref: str,
        exc: Exception,
        trigger: str,
        run_id: int | None,
    ) -> None:
        logger.error("%s failed for %s (%s): %s", operation, user.name, ref, exc)
        self.state_store.record_audit_event(
            user_name=user.name,
            event_ref=ref,
            action="apply_error",
            details={
                "trigger": trigger,
                "operation": operation,
                "error": f"{type(exc).__name__}: {exc}",
            },
            run_id=run_id,
        )

    def _record_dry_run(
        self, user: UserConfig, instructions: SyncInstructions, trigger: str, run_id: int | None
    ) -> None:
        for data in instructions.insert:
            logger.info("[dry-run] insert %s", data.summary)
        for update in instructions.update:
            logger.info("[dry-run] update %s -> %s", update.target_id, update.data.summary)
        for event_id in instructions.delete:
            logger.info("[dry-run] delete %s", event_id)
        self.state_store.record_audit_event(
            user_name=user.name,
            event_ref="sync",
            action="dry_run",
            details={
                "trigger": trigger,
                "insert": [item.to_dict() for item in instructions.insert],
                "update": [
                    {"target_id": item.target_id, "event": item.data.to_dict()} for item in instructions.update
                ],
                "delete": list(instructions.delete),
            },
            run_id=run_id,
        )

    def run_once(self, trigger: str = "manual", now: datetime | None = None) -> SyncResult:
        """Run one full pass over every configured user.

        Runs are serialized; a manual run requested while the scheduler is syncing waits for it.
        """
        with self._run_lock:
            return self._run_once(trigger, now)

    def _run_once(self, trigger: str, now: datetime | None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        changes_applied = 0
        errors = 0
        run_id: int | None = None

        try:
            config = self.config_manager.load()
            users = [user for user in config.users if user.sources]
            if not users:
                duration_ms = _elapsed_ms(started_at)
                message = "No users with sources configured. Sync skipped."
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="skipped",
                    message=message,
                    duration_ms=duration_ms,
                    changes_applied=0,
                    errors=0,
                )
                return SyncResult(
                    status="skipped",
                    message=message,
                    duration_ms=duration_ms,
                    changes_applied=0,
                    errors=0,
                    trigger=trigger,
                )

            run_id = self.state_store.start_sync_run(trigger=trigger)
            now = now or datetime.now(timezone.utc)
            window_start, window_end = sync_window(now, config.sync.days_back, config.sync.days_ahead)
            failed_users = 0
            planned = 0

            for user in users:
                try:
                    instructions, target_service = self.sync_user(
                        user,
                        config,
                        window_start=window_start,
                        window_end=window_end,
                        now=now,
                    )
                except Exception as exc:
                    failed_users += 1
                    errors += 1
                    error_text = f"{type(exc).__name__}: {exc}"
                    if isinstance(exc, (FetchError, MalformedEventError)):
                        logger.error("Sync for %s aborted: %s", user.name, exc)
                    else:
                        logger.exception("Sync for %s failed unexpectedly", user.name)
                    self.state_store.record_audit_event(
                        user_name=user.name,
                        event_ref="sync",
                        action="user_sync_error",
                        details={"trigger": trigger, "error": error_text},
                        run_id=run_id,
                    )
                    self.state_store.record_user_sync(
                        run_id=run_id, user_name=user.name, status="failed", error=error_text
                    )
                    continue

                counts = instructions.counts()
                planned += sum(counts.values())
                if config.sync.dry_run:
                    self._record_dry_run(user, instructions, trigger, run_id)
                    self.state_store.record_user_sync(
                        run_id=run_id, user_name=user.name, status="dry_run", planned=counts
                    )
                    continue
                applied, failed = self.apply(
                    user=user,
                    service=target_service,
                    instructions=instructions,
                    trigger=trigger,
                    run_id=run_id,
                )
                changes_applied += applied
                errors += failed
                self.state_store.record_user_sync(
                    run_id=run_id,
                    user_name=user.name,
                    status="ok",
                    planned=counts,
                    applied=applied,
                    failed=failed,
                )

            if failed_users == len(users):
                status = "error"
            elif errors:
                status = "partial"
            else:
                status = "success"
            duration_ms = _elapsed_ms(started_at)
            message = (
                f"Synced {len(users) - failed_users}/{len(users)} users, "
                f"{planned} instructions planned, {changes_applied} applied."
            )
            if config.sync.dry_run:
                message += " Dry run, nothing written."
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                errors=errors,
            )
            if status == "success":
                self.state_store.set_meta("last_success_at", serialize_datetime(started_at) or "")
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                errors=errors,
                trigger=trigger,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync run failed")
            if run_id is None:
                run_id = self.state_store.start_sync_run(trigger=trigger)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                errors=errors + 1,
            )
            self.state_store.record_audit_event(
                user_name="system",
                event_ref="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                errors=errors + 1,
                trigger=trigger,
            )
