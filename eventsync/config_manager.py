from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from eventsync.models import AppConfig, LoggingConfig, default_app_config

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "EVENTSYNC_CONFIG"
DEFAULT_CONFIG_PATH = "data/config.yaml"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config_dict: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(
            config_dict,
            handle,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )


def configure_logging(config: LoggingConfig) -> None:
    logging.basicConfig(level=getattr(logging, config.level, logging.INFO), format=config.format)


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    @classmethod
    def from_env(cls) -> "ConfigManager":
        return cls(os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        logger.info("Writing default config to %s", self.config_path)
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
            _dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config
