from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from icsbridge.errors import ConfigurationError
from icsbridge.models import AppConfig, SyncTargetConfig, default_app_config

DEFAULT_CONFIG_PATH = "data/config.yaml"
DEFAULT_STATE_PATH = "data/state.db"


def config_path_from_env() -> str:
    return os.getenv("ICSBRIDGE_CONFIG_PATH", DEFAULT_CONFIG_PATH)


def state_path_from_env() -> str:
    return os.getenv("ICSBRIDGE_STATE_PATH", DEFAULT_STATE_PATH)


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
                try:
                    data = yaml.safe_load(handle) or {}
                except yaml.YAMLError as exc:
                    raise ConfigurationError(f"Config file {self.config_path} is not valid YAML: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigurationError(f"Config file {self.config_path} must contain a mapping.")
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
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("caldav", {}).get("password"):
            config["caldav"]["password"] = "***"
        return config

    def require_target(self, target_id: str) -> tuple[AppConfig, SyncTargetConfig]:
        config = self.load()
        target = config.find_target(target_id)
        if target is None:
            raise ConfigurationError(f"Unknown sync target: {target_id}")
        if not target.ics_url or not target.calendar_id:
            raise ConfigurationError(f"Sync target {target_id} needs both ics_url and calendar_id.")
        if not config.caldav.is_complete():
            raise ConfigurationError("CalDAV config missing base_url/username.")
        return config, target
