from __future__ import annotations

import logging
import threading
from typing import Optional

import yaml

from eventsync.config_manager import ConfigManager
from eventsync.models import SyncConfig, SyncResult
from eventsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background loop around ``SyncEngine.run_once``.

    A failed run is retried after ``sync.retry_seconds``, doubling on each
    consecutive failure up to ``sync.interval_seconds``.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.consecutive_failures = 0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="eventsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def trigger_manual(self) -> None:
        self._wake_event.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._stop_event.wait(timeout=timeout)

    def _sync_config(self) -> SyncConfig:
        try:
            return self.config_manager.load().sync
        except (OSError, ValueError, yaml.YAMLError):
            logger.exception("Could not read schedule from config, using defaults")
            return SyncConfig()

    def next_delay(self, result: SyncResult) -> float:
        sync_config = self._sync_config()
        if result.status != "error":
            self.consecutive_failures = 0
            return float(sync_config.interval_seconds)
        self.consecutive_failures += 1
        backoff = sync_config.retry_seconds * 2 ** (self.consecutive_failures - 1)
        delay = float(min(backoff, sync_config.interval_seconds))
        logger.warning(
            "Sync failed %d time(s) in a row, retrying in %.0fs: %s",
            self.consecutive_failures,
            delay,
            result.message,
        )
        return delay

    def _next_trigger(self, woken: bool) -> str:
        if woken:
            return "manual"
        return "retry" if self.consecutive_failures else "scheduled"

    def _loop(self) -> None:
        delay = self.next_delay(self.sync_engine.run_once(trigger="startup"))
        while not self._stop_event.is_set():
            woken = self._wake_event.wait(timeout=delay)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            delay = self.next_delay(self.sync_engine.run_once(trigger=self._next_trigger(woken)))
