from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


class RecurrenceState(str, Enum):
    """Whether an event carries recurrence rules.

    ``UNKNOWN`` marks rows persisted before the flag was recorded.
    """

    UNKNOWN = "unknown"
    RECURRING = "recurring"
    SINGLE = "single"

    @classmethod
    def from_flag(cls, value: Any) -> "RecurrenceState":
        if isinstance(value, RecurrenceState):
            return value
        if value is None:
            return cls.UNKNOWN
        if isinstance(value, str):
            text = value.strip().lower()
            if text in {cls.RECURRING.value, "true", "1"}:
                return cls.RECURRING
            if text in {cls.SINGLE.value, "false", "0"}:
                return cls.SINGLE
            return cls.UNKNOWN
        return cls.RECURRING if bool(value) else cls.SINGLE

    def as_flag(self) -> bool | None:
        if self is RecurrenceState.UNKNOWN:
            return None
        return self is RecurrenceState.RECURRING


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    user_email: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            user_email=str(data.get("user_email", "")).strip().lower(),
        )


@dataclass
class SyncConfig:
    window_days_back: int = 7
    window_days_ahead: int = 28
    interval_seconds: int = 300
    retry_seconds: int = 60
    fetch_timeout_seconds: float = 30.0
    timezone: str = "UTC"
    normalize_start_times: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_days_back=max(0, int(data.get("window_days_back", 7))),
            window_days_ahead=max(1, int(data.get("window_days_ahead", 28))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            retry_seconds=max(5, int(data.get("retry_seconds", 60))),
            fetch_timeout_seconds=max(1.0, float(data.get("fetch_timeout_seconds", 30.0))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            normalize_start_times=bool(data.get("normalize_start_times", False)),
        )


@dataclass
class StoreConfig:
    db_path: str = "data/eventsync.db"
    user_id: str = "local"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreConfig":
        data = data or {}
        return cls(
            db_path=str(data.get("db_path", "data/eventsync.db")).strip() or "data/eventsync.db",
            user_id=str(data.get("user_id", "local")).strip() or "local",
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(
            level=level,
            format=str(data.get("format", cls.format)).strip() or cls.format,
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            store=StoreConfig.from_dict(data.get("store")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    id: str
    tracking_id_calendar: str
    name: str = ""
    enabled: bool = False


@dataclass(frozen=True)
class SyncContext:
    window_from: datetime
    window_to: datetime
    calendar_ids: frozenset[str] = frozenset()
    calendar_tracking_id_to_id: dict[str, str] = field(default_factory=dict)
    normalize_start_times: bool = False

    @property
    def from_iso(self) -> str:
        return serialize_datetime(self.window_from) or ""

    @property
    def to_iso(self) -> str:
        return serialize_datetime(self.window_to) or ""

    def enabled_tracking_ids(self) -> list[str]:
        return [
            tracking_id
            for tracking_id, calendar_id in self.calendar_tracking_id_to_id.items()
            if calendar_id in self.calendar_ids
        ]


@dataclass
class EventParticipant:
    name: str | None = None
    email: str | None = None
    is_organizer: bool = False
    is_current_user: bool = False


@dataclass
class RawPerson:
    name: str | None = None
    email: str | None = None
    is_current_user: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RawPerson":
        data = data or {}
        return cls(
            name=_optional_text(data.get("name")),
            email=_optional_text(data.get("email")),
            is_current_user=bool(data.get("is_current_user", False)),
        )


@dataclass
class RawProviderEvent:
    id: str
    calendar_id: str
    started_at: str
    ended_at: str | None = None
    title: str | None = None
    location: str | None = None
    meeting_link: str | None = None
    description: str | None = None
    is_all_day: bool = False
    has_recurrence_rules: bool = False
    recurring_event_id: str | None = None
    organizer: RawPerson | None = None
    attendees: list[RawPerson] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawProviderEvent":
        organizer = data.get("organizer")
        return cls(
            id=str(data.get("id", "")),
            calendar_id=str(data.get("calendar_id", "")),
            started_at=str(data.get("started_at", "")),
            ended_at=_optional_text(data.get("ended_at")),
            title=_optional_text(data.get("title")),
            location=_optional_text(data.get("location")),
            meeting_link=_optional_text(data.get("meeting_link")),
            description=_optional_text(data.get("description")),
            is_all_day=bool(data.get("is_all_day", False)),
            has_recurrence_rules=bool(data.get("has_recurrence_rules", False)),
            recurring_event_id=_optional_text(data.get("recurring_event_id")),
            organizer=RawPerson.from_dict(organizer) if isinstance(organizer, dict) else None,
            attendees=[RawPerson.from_dict(item) for item in data.get("attendees") or [] if isinstance(item, dict)],
        )


@dataclass
class IncomingEvent:
    tracking_id_event: str
    tracking_id_calendar: str
    started_at: str
    ended_at: str | None = None
    title: str | None = None
    location: str | None = None
    meeting_link: str | None = None
    description: str | None = None
    recurrence_series_id: str | None = None
    has_recurrence_rules: RecurrenceState = RecurrenceState.SINGLE
    is_all_day: bool = False


# Fields owned by the provider; everything else on a stored row is local.
PROVIDER_FIELDS = (
    "tracking_id_event",
    "started_at",
    "ended_at",
    "title",
    "location",
    "meeting_link",
    "description",
    "recurrence_series_id",
    "has_recurrence_rules",
    "is_all_day",
)


@dataclass
class ExistingEvent:
    id: str
    calendar_id: str | None = None
    tracking_id_event: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    has_recurrence_rules: RecurrenceState = RecurrenceState.UNKNOWN
    title: str | None = None
    location: str | None = None
    meeting_link: str | None = None
    description: str | None = None
    note: str | None = None
    recurrence_series_id: str | None = None
    is_all_day: bool = False
    user_id: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ExistingEvent":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in row.items() if key in known}
        values["id"] = str(row.get("id", ""))
        values["has_recurrence_rules"] = RecurrenceState.from_flag(row.get("has_recurrence_rules"))
        values["is_all_day"] = bool(row.get("is_all_day") or False)
        return cls(**values)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["has_recurrence_rules"] = self.has_recurrence_rules.as_flag()
        return row

    def merged_with(self, incoming: IncomingEvent) -> "ExistingEvent":
        """Overlay provider fields from ``incoming``; local fields stay put."""
        return replace(self, **{name: getattr(incoming, name) for name in PROVIDER_FIELDS})


@dataclass
class SyncDiff:
    to_add: list[IncomingEvent] = field(default_factory=list)
    to_update: list[ExistingEvent] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_delete)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    added: int
    updated: int
    deleted: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "added": self.added,
            "updated": self.updated,
            "deleted": self.deleted,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def sync_window(now: datetime, days_back: int, days_ahead: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    start_date: date = now_utc.date() - timedelta(days=max(0, days_back))
    end_date: date = now_utc.date() + timedelta(days=max(1, days_ahead))
    start = datetime.combine(start_date, time.min, tzinfo=now_utc.tzinfo)
    end = datetime.combine(end_date, time.max, tzinfo=now_utc.tzinfo)
    return start, end
