from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import caldav
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from eventsync.models import CalDAVConfig, RawPerson, RawProviderEvent, parse_iso_datetime, serialize_datetime

logger = logging.getLogger(__name__)

CONFERENCE_PROPERTIES = ("X-GOOGLE-CONFERENCE", "X-MICROSOFT-ONLINEMEETINGEXTERNALLINK")


class CalendarSourceError(RuntimeError):
    pass


@dataclass
class ProviderCalendar:
    tracking_id_calendar: str
    name: str


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _text(vevent: ICEvent, name: str) -> str | None:
    value = str(vevent.get(name, "") or "").strip()
    return value or None


def _zone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC for occurrence dates", name)
        return timezone.utc


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


class CalDAVEventSource:
    """Event source backed by a CalDAV server.

    Recurring events are expanded server-side; each occurrence gets the id
    ``UID:YYYY-MM-DD`` where the date is the occurrence date in the
    requested timezone.
    """

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise CalendarSourceError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[ProviderCalendar]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[ProviderCalendar] = []
        for calendar in self._principal.calendars():
            tracking_id = _normalize_calendar_id(str(calendar.url))
            name = getattr(calendar, "name", "") or tracking_id
            self._calendar_cache[tracking_id] = calendar
            calendars.append(ProviderCalendar(tracking_id_calendar=tracking_id, name=name))
        return calendars

    def _get_calendar(self, tracking_id: str) -> Any:
        tracking_id = _normalize_calendar_id(tracking_id)
        if tracking_id not in self._calendar_cache:
            self.list_calendars()
        if tracking_id not in self._calendar_cache:
            raise CalendarSourceError(f"Calendar not found: {tracking_id}")
        return self._calendar_cache[tracking_id]

    def _current_user_emails(self) -> set[str]:
        emails = {self.config.user_email.lower()} if self.config.user_email else set()
        if "@" in self.config.username:
            emails.add(self.config.username.lower())
        return emails

    def fetch_raw_events(
        self,
        calendar_tracking_id: str,
        start: datetime,
        end: datetime,
        timezone_name: str | None = None,
    ) -> list[RawProviderEvent]:
        self._connect()
        calendar = self._get_calendar(calendar_tracking_id)
        resources = calendar.search(start=start, end=end, event=True, expand=True)
        zone = _zone(timezone_name)
        events: list[RawProviderEvent] = []
        for resource in resources:
            calendar_obj = ICalendar.from_ical(_decode_raw_ical(resource.data))
            for component in calendar_obj.walk("VEVENT"):
                event = self._parse_vevent(calendar_tracking_id, component, zone)
                if event is not None:
                    events.append(event)
        return events

    async def list_events(
        self,
        calendar_tracking_id: str,
        from_iso: str,
        to_iso: str,
        timezone: str | None = None,
    ) -> list[RawProviderEvent]:
        start = parse_iso_datetime(from_iso)
        end = parse_iso_datetime(to_iso)
        if start is None or end is None:
            raise CalendarSourceError("Event window bounds are required.")
        return await asyncio.to_thread(self.fetch_raw_events, calendar_tracking_id, start, end, timezone)

    def _person(self, address: Any) -> RawPerson:
        email = str(address or "").strip()
        if email.lower().startswith("mailto:"):
            email = email[len("mailto:"):]
        params = getattr(address, "params", {}) or {}
        name = str(params.get("CN", "") or "").strip() or None
        return RawPerson(
            name=name,
            email=email or None,
            is_current_user=bool(email) and email.lower() in self._current_user_emails(),
        )

    def _parse_vevent(self, calendar_tracking_id: str, vevent: ICEvent, zone: Any) -> RawProviderEvent | None:
        uid = str(vevent.get("UID", "")).strip()
        dtstart_raw = _decoded(vevent, "DTSTART")
        start = _coerce_datetime(dtstart_raw)
        if not uid or start is None:
            return None
        end = _coerce_datetime(_decoded(vevent, "DTEND"))
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
        if end is None:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

        recurrence_id = _coerce_datetime(_decoded(vevent, "RECURRENCE-ID"))
        has_recurrence_rules = vevent.get("RRULE") is not None or recurrence_id is not None
        if has_recurrence_rules:
            occurrence = recurrence_id or start
            event_id = f"{uid}:{occurrence.astimezone(zone).date().isoformat()}"
        else:
            event_id = uid

        meeting_link = None
        for name in CONFERENCE_PROPERTIES:
            meeting_link = _text(vevent, name)
            if meeting_link:
                break

        organizer = vevent.get("ORGANIZER")
        return RawProviderEvent(
            id=event_id,
            calendar_id=calendar_tracking_id,
            started_at=serialize_datetime(start) or "",
            ended_at=serialize_datetime(end),
            title=_text(vevent, "SUMMARY"),
            location=_text(vevent, "LOCATION"),
            meeting_link=meeting_link,
            description=_text(vevent, "DESCRIPTION"),
            is_all_day=all_day,
            has_recurrence_rules=has_recurrence_rules,
            recurring_event_id=uid if has_recurrence_rules else None,
            organizer=self._person(organizer) if organizer is not None else None,
            attendees=[self._person(item) for item in _as_list(vevent.get("ATTENDEE"))],
        )
