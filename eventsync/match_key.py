from __future__ import annotations

from typing import Any

from eventsync.models import RecurrenceState, parse_iso_datetime

# ASCII unit separator; never appears in provider ids or ISO timestamps.
KEY_SEPARATOR = "\x1f"


def _field(event: Any, name: str) -> Any:
    if isinstance(event, dict):
        return event.get(name)
    return getattr(event, name, None)


def _start_component(started_at: Any, normalize_start: bool) -> str:
    text = str(started_at or "")
    if not normalize_start or not text:
        return text
    try:
        parsed = parse_iso_datetime(text)
    except ValueError:
        return text
    if parsed is None:
        return text
    return str(int(parsed.timestamp() * 1000))


def match_key(
    event: Any,
    *,
    assume_recurring: bool | None = None,
    normalize_start: bool = False,
) -> str | None:
    """Identity of one event occurrence across sync runs.

    Returns ``None`` when the event has no provider tracking id; such an
    event can never be matched. ``assume_recurring`` overrides the event's
    own recurrence flag, which is how rows with an unknown flag are probed.
    """
    tracking_id = _field(event, "tracking_id_event")
    if not tracking_id:
        return None

    if assume_recurring is None:
        state = RecurrenceState.from_flag(_field(event, "has_recurrence_rules"))
        recurring = state is RecurrenceState.RECURRING
    else:
        recurring = bool(assume_recurring)

    start = _start_component(_field(event, "started_at"), normalize_start)
    return KEY_SEPARATOR.join([str(tracking_id), start, "true" if recurring else "false"])
