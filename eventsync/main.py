from __future__ import annotations

import logging
import os

from eventsync.config_manager import ConfigManager, configure_logging
from eventsync.scheduler import SyncScheduler
from eventsync.state_store import StateStore
from eventsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def main() -> None:
    config_manager = ConfigManager.from_env()
    config = config_manager.load()
    configure_logging(config.logging)

    state_store = StateStore(config.store.db_path)
    engine = SyncEngine(config_manager, state_store)

    if os.getenv("EVENTSYNC_RUN_ONCE", "").strip().lower() in {"1", "true", "yes"}:
        result = engine.run_once(trigger="manual")
        logger.info("Sync finished: %s", result.to_dict())
        return

    scheduler = SyncScheduler(engine, config_manager)
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        logger.info("Stopping scheduler")
    finally:
        scheduler.stop()


if __name__ == "__main__":
    main()
