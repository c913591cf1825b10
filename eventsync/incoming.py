from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Protocol

from eventsync.match_key import match_key
from eventsync.meeting_link import extract_meeting_link as default_extract_meeting_link
from eventsync.models import (
    EventParticipant,
    IncomingEvent,
    RawProviderEvent,
    RecurrenceState,
    SyncContext,
)

logger = logging.getLogger(__name__)

_OCCURRENCE_SUFFIX_RE = re.compile(r":\d{4}-\d{2}-\d{2}$")

MeetingLinkExtractor = Callable[[str], "str | None"]


class CalendarFetchError(RuntimeError):
    def __init__(self, calendar_tracking_id: str, cause: str) -> None:
        super().__init__(f"Failed to fetch events for calendar {calendar_tracking_id}: {cause}")
        self.calendar_tracking_id = calendar_tracking_id
        self.cause = cause


class EventSource(Protocol):
    async def list_events(
        self,
        calendar_tracking_id: str,
        from_iso: str,
        to_iso: str,
        timezone: str | None = None,
    ) -> list[RawProviderEvent]:
        ...


@dataclass
class IncomingFetchResult:
    events: list[IncomingEvent] = field(default_factory=list)
    participants: dict[str, list[EventParticipant]] = field(default_factory=dict)


def series_tracking_id(raw_id: str, has_recurrence_rules: bool) -> str:
    if not has_recurrence_rules:
        return raw_id
    return _OCCURRENCE_SUFFIX_RE.sub("", raw_id) or raw_id


def _resolve_meeting_link(raw: RawProviderEvent, extract: MeetingLinkExtractor) -> str | None:
    if raw.meeting_link:
        return raw.meeting_link
    for text in (raw.description, raw.location):
        if not text:
            continue
        link = extract(text)
        if link:
            return link
    return None


def normalize_event(
    raw: RawProviderEvent,
    extract: MeetingLinkExtractor = default_extract_meeting_link,
) -> tuple[IncomingEvent, list[EventParticipant]]:
    participants: list[EventParticipant] = []
    if raw.organizer is not None:
        participants.append(
            EventParticipant(
                name=raw.organizer.name,
                email=raw.organizer.email,
                is_organizer=True,
                is_current_user=raw.organizer.is_current_user,
            )
        )
    for attendee in raw.attendees:
        participants.append(
            EventParticipant(
                name=attendee.name,
                email=attendee.email,
                is_organizer=False,
                is_current_user=attendee.is_current_user,
            )
        )

    event = IncomingEvent(
        tracking_id_event=series_tracking_id(raw.id, raw.has_recurrence_rules),
        tracking_id_calendar=raw.calendar_id,
        started_at=raw.started_at,
        ended_at=raw.ended_at,
        title=raw.title,
        location=raw.location,
        meeting_link=_resolve_meeting_link(raw, extract),
        description=raw.description,
        recurrence_series_id=raw.recurring_event_id,
        has_recurrence_rules=RecurrenceState.from_flag(raw.has_recurrence_rules),
        is_all_day=raw.is_all_day,
    )
    return event, participants


async def _fetch_calendar(
    source: EventSource,
    ctx: SyncContext,
    calendar_tracking_id: str,
    timezone: str | None,
    timeout_seconds: float,
) -> list[RawProviderEvent]:
    try:
        return await asyncio.wait_for(
            source.list_events(calendar_tracking_id, ctx.from_iso, ctx.to_iso, timezone),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        raise CalendarFetchError(calendar_tracking_id, f"timed out after {timeout_seconds:g}s") from None
    except CalendarFetchError:
        raise
    except Exception as exc:
        raise CalendarFetchError(calendar_tracking_id, str(exc) or exc.__class__.__name__) from exc


async def fetch_incoming_events(
    ctx: SyncContext,
    source: EventSource,
    *,
    timezone: str | None = None,
    extract_meeting_link: MeetingLinkExtractor = default_extract_meeting_link,
    timeout_seconds: float = 30.0,
) -> IncomingFetchResult:
    # All or nothing: one failed calendar cancels the rest.
    tracking_ids = ctx.enabled_tracking_ids()
    tasks = [
        asyncio.ensure_future(_fetch_calendar(source, ctx, tracking_id, timezone, timeout_seconds))
        for tracking_id in tracking_ids
    ]
    try:
        batches = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    result = IncomingFetchResult()
    for tracking_id, raw_events in zip(tracking_ids, batches):
        logger.debug("Fetched %d events from calendar %s", len(raw_events), tracking_id)
        for raw in raw_events:
            if not raw.id or not raw.started_at:
                logger.debug("Dropping provider event without id or start in calendar %s", tracking_id)
                continue
            event, participants = normalize_event(raw, extract_meeting_link)
            result.events.append(event)
            if participants:
                key = match_key(event, normalize_start=ctx.normalize_start_times)
                if key is not None:
                    result.participants[key] = participants
    return result
