from __future__ import annotations

import logging
from typing import Iterable, Mapping

from eventsync.match_key import match_key
from eventsync.models import (
    EventParticipant,
    ExistingEvent,
    IncomingEvent,
    RecurrenceState,
    SyncContext,
    SyncDiff,
)

logger = logging.getLogger(__name__)


def _probe_keys(event: ExistingEvent, normalize_start: bool) -> list[str]:
    if event.has_recurrence_rules is RecurrenceState.UNKNOWN:
        probes = [False, True]
    else:
        probes = [event.has_recurrence_rules is RecurrenceState.RECURRING]
    keys: list[str] = []
    for assume_recurring in probes:
        key = match_key(event, assume_recurring=assume_recurring, normalize_start=normalize_start)
        if key is not None:
            keys.append(key)
    return keys


def sync_events(
    ctx: SyncContext,
    *,
    incoming: Iterable[IncomingEvent],
    existing: Iterable[ExistingEvent],
) -> SyncDiff:
    """Compute the inserts, updates and deletions that bring ``existing`` in line with ``incoming``."""
    normalize_start = ctx.normalize_start_times
    incoming = list(incoming)
    diff = SyncDiff()

    incoming_by_key: dict[str, IncomingEvent] = {}
    for event in incoming:
        key = match_key(event, normalize_start=normalize_start)
        if key is None:
            continue
        if key in incoming_by_key:
            logger.debug("Duplicate incoming key for event %s, keeping the last one", event.tracking_id_event)
        incoming_by_key[key] = event

    handled_keys: set[str] = set()

    existing = list(existing)
    for store_event in existing:
        if store_event.calendar_id not in ctx.calendar_ids:
            diff.to_delete.append(store_event.id)
            continue

        if not store_event.tracking_id_event:
            diff.to_delete.append(store_event.id)
            continue

        matched_key: str | None = None
        for key in _probe_keys(store_event, normalize_start):
            if key in incoming_by_key and key not in handled_keys:
                matched_key = key
                break

        if matched_key is None:
            diff.to_delete.append(store_event.id)
            continue

        merged = store_event.merged_with(incoming_by_key[matched_key])
        if merged != store_event:
            diff.to_update.append(merged)
        handled_keys.add(matched_key)

    for event in incoming:
        key = match_key(event, normalize_start=normalize_start)
        if key is None or key in handled_keys:
            continue
        handled_keys.add(key)
        diff.to_add.append(incoming_by_key[key])

    logger.debug(
        "Reconciled %d existing against %d incoming: add=%d update=%d delete=%d",
        len(existing),
        len(incoming),
        len(diff.to_add),
        len(diff.to_update),
        len(diff.to_delete),
    )
    return diff


def attach_participants(
    incoming: Iterable[IncomingEvent],
    participants: Mapping[str, list[EventParticipant]],
    *,
    normalize_start: bool = False,
) -> dict[str, list[EventParticipant]]:
    selected: dict[str, list[EventParticipant]] = {}
    for event in incoming:
        key = match_key(event, normalize_start=normalize_start)
        if key is None:
            continue
        selected[key] = list(participants.get(key, []))
    return selected
