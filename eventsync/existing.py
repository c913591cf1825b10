from __future__ import annotations

import logging
from typing import Any

from eventsync.models import ExistingEvent, SyncContext, parse_iso_datetime
from eventsync.state_store import StateStore

logger = logging.getLogger(__name__)


def fetch_existing_events(ctx: SyncContext, store: StateStore) -> list[ExistingEvent]:
    # Rows without a calendar or start are never matched nor deleted.
    events: list[ExistingEvent] = []

    def collect(row: dict[str, Any]) -> None:
        if not row.get("calendar_id") or not row.get("started_at"):
            return
        try:
            start = parse_iso_datetime(row["started_at"])
            end = parse_iso_datetime(row.get("ended_at")) or start
        except ValueError:
            logger.debug("Skipping event row %s with unparseable timestamps", row.get("id"))
            return
        if start is None or end is None:
            return
        if start <= ctx.window_to and end >= ctx.window_from:
            events.append(ExistingEvent.from_row(row))

    store.for_each_row("events", collect)
    return events
