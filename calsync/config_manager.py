from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calsync.models import AppConfig, default_app_config

MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(
        config_dict,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload`` into the stored config.

        ``users`` is a list and is replaced wholesale. A source password sent back as the
        mask keeps the stored password of the same source: users are matched by name
        (falling back to list position) and sources by position within the user.
        """
        with self._lock:
            current = self.load().to_dict()
            stored_users = current.get("users", [])
            payload = copy.deepcopy(payload)
            incoming_users = payload.get("users")
            if isinstance(incoming_users, list):
                stored_by_name = {user.get("name"): user for user in stored_users}
                for index, user in enumerate(incoming_users):
                    if not isinstance(user, dict):
                        continue
                    stored = stored_by_name.get(user.get("name"))
                    if stored is None and index < len(stored_users):
                        stored = stored_users[index]
                    stored_sources = (stored or {}).get("sources", [])
                    for position, source in enumerate(user.get("sources", []) or []):
                        if isinstance(source, dict) and source.get("password") == MASK:
                            known = stored_sources[position] if position < len(stored_sources) else {}
                            source["password"] = known.get("password", "")
            config = AppConfig.from_dict(_deep_merge(current, payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        """Stored config with every non-empty source password replaced by ``MASK``."""
        config = self.load().to_dict()
        for user in config["users"]:
            for source in user["sources"]:
                if source["password"]:
                    source["password"] = MASK
        return config
