from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from eventsync.match_key import match_key
from eventsync.models import (
    CalendarInfo,
    EventParticipant,
    ExistingEvent,
    IncomingEvent,
    SyncContext,
    SyncDiff,
)

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "calendars": ("id", "tracking_id_calendar", "name", "enabled", "updated_at"),
    "events": (
        "id",
        "user_id",
        "created_at",
        "calendar_id",
        "tracking_id_event",
        "started_at",
        "ended_at",
        "has_recurrence_rules",
        "title",
        "location",
        "meeting_link",
        "description",
        "note",
        "recurrence_series_id",
        "is_all_day",
    ),
}


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendars (
            id TEXT PRIMARY KEY,
            tracking_id_calendar TEXT NOT NULL UNIQUE,
            name TEXT,
            enabled INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            created_at TEXT,
            calendar_id TEXT,
            tracking_id_event TEXT,
            started_at TEXT,
            ended_at TEXT,
            has_recurrence_rules INTEGER,
            title TEXT,
            location TEXT,
            meeting_link TEXT,
            description TEXT,
            note TEXT,
            recurrence_series_id TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS event_participants (
            match_key TEXT NOT NULL,
            position INTEGER NOT NULL,
            name TEXT,
            email TEXT,
            is_organizer INTEGER NOT NULL,
            is_current_user INTEGER NOT NULL,
            PRIMARY KEY (match_key, position)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            added INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Row primitives

    @staticmethod
    def _columns(table: str) -> tuple[str, ...]:
        try:
            return TABLE_COLUMNS[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    def for_each_row(self, table: str, fn: Callable[[dict[str, Any]], None]) -> None:
        columns = self._columns(table)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(f"SELECT {', '.join(columns)} FROM {table}").fetchall()  # nosec B608
        for row in rows:
            fn(dict(row))

    def get_row(self, table: str, row_id: str) -> dict[str, Any] | None:
        columns = self._columns(table)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {', '.join(columns)} FROM {table} WHERE id = ?",  # nosec B608
                    (str(row_id),),
                ).fetchone()
        return dict(row) if row else None

    def _set_row(self, conn: sqlite3.Connection, table: str, row_id: str, values: Mapping[str, Any]) -> None:
        columns = self._columns(table)
        payload = {key: value for key, value in values.items() if key in columns and key != "id"}
        payload["id"] = str(row_id)
        names = list(payload)
        updates = ", ".join(f"{name} = excluded.{name}" for name in names if name != "id")
        sql = f"INSERT INTO {table}({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})"  # nosec B608
        if updates:
            sql += f" ON CONFLICT(id) DO UPDATE SET {updates}"
        else:
            sql += " ON CONFLICT(id) DO NOTHING"
        conn.execute(sql, tuple(payload[name] for name in names))

    def set_row(self, table: str, row_id: str, values: Mapping[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                self._set_row(conn, table, row_id, values)
                conn.commit()

    def delete_row(self, table: str, row_id: str) -> None:
        self._columns(table)
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (str(row_id),))  # nosec B608
                conn.commit()

    # Calendars

    def upsert_calendar(self, tracking_id_calendar: str, name: str) -> CalendarInfo:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, tracking_id_calendar, name, enabled FROM calendars WHERE tracking_id_calendar = ?",
                    (tracking_id_calendar,),
                ).fetchone()
                if row is None:
                    calendar_id = str(uuid.uuid4())
                    conn.execute(
                        """
                        INSERT INTO calendars(id, tracking_id_calendar, name, enabled, updated_at)
                        VALUES (?, ?, ?, 0, ?)
                        """,
                        (calendar_id, tracking_id_calendar, name, _utc_now()),
                    )
                    enabled = False
                else:
                    calendar_id = str(row["id"])
                    enabled = bool(row["enabled"])
                    conn.execute(
                        "UPDATE calendars SET name = ?, updated_at = ? WHERE id = ?",
                        (name, _utc_now(), calendar_id),
                    )
                conn.commit()
        return CalendarInfo(
            id=calendar_id,
            tracking_id_calendar=tracking_id_calendar,
            name=name,
            enabled=enabled,
        )

    def set_calendar_enabled(self, calendar_id: str, enabled: bool) -> None:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE calendars SET enabled = ?, updated_at = ? WHERE id = ?",
                    (1 if enabled else 0, _utc_now(), str(calendar_id)),
                )
                conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"Calendar not found: {calendar_id}")

    def disable_missing_calendars(self, present_tracking_ids: set[str]) -> list[CalendarInfo]:
        """Disable enabled calendars the provider no longer lists. Returns the ones disabled."""
        missing = [
            calendar
            for calendar in self.list_calendars()
            if calendar.enabled and calendar.tracking_id_calendar not in present_tracking_ids
        ]
        if not missing:
            return []
        with self._lock:
            with self._connect() as conn:
                for calendar in missing:
                    conn.execute(
                        "UPDATE calendars SET enabled = 0, updated_at = ? WHERE id = ?",
                        (_utc_now(), calendar.id),
                    )
                conn.commit()
        return [replace(calendar, enabled=False) for calendar in missing]

    def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []

        def collect(row: dict[str, Any]) -> None:
            calendars.append(
                CalendarInfo(
                    id=str(row["id"]),
                    tracking_id_calendar=str(row["tracking_id_calendar"]),
                    name=str(row["name"] or ""),
                    enabled=bool(row["enabled"]),
                )
            )

        self.for_each_row("calendars", collect)
        calendars.sort(key=lambda item: (item.name.casefold(), item.id))
        return calendars

    # Diff application

    def apply_diff(
        self,
        ctx: SyncContext,
        diff: SyncDiff,
        participants: Mapping[str, list[EventParticipant]] | None = None,
        *,
        user_id: str | None = None,
    ) -> list[str]:
        """Apply deletions, updates and inserts in a single transaction.

        Returns the ids of the inserted rows.
        """
        added_ids: list[str] = []
        with self._lock:
            with self._connect() as conn:
                for row_id in diff.to_delete:
                    conn.execute("DELETE FROM events WHERE id = ?", (str(row_id),))
                for event in diff.to_update:
                    self._set_row(conn, "events", event.id, event.to_row())
                for incoming in diff.to_add:
                    row = self._new_event_row(ctx, incoming, user_id)
                    if row is None:
                        continue
                    self._set_row(conn, "events", row["id"], row)
                    added_ids.append(row["id"])
                for key, items in (participants or {}).items():
                    self._replace_participants(conn, key, items)
                conn.commit()
        logger.info(
            "Applied diff: %d added, %d updated, %d deleted",
            len(added_ids),
            len(diff.to_update),
            len(diff.to_delete),
        )
        return added_ids

    @staticmethod
    def _new_event_row(ctx: SyncContext, incoming: IncomingEvent, user_id: str | None) -> dict[str, Any] | None:
        calendar_id = ctx.calendar_tracking_id_to_id.get(incoming.tracking_id_calendar)
        if calendar_id is None:
            logger.warning(
                "Skipping event %s from unmapped calendar %s",
                incoming.tracking_id_event,
                incoming.tracking_id_calendar,
            )
            return None
        event = ExistingEvent(
            id=str(uuid.uuid4()),
            calendar_id=calendar_id,
            user_id=user_id,
            created_at=_utc_now(),
        ).merged_with(incoming)
        return event.to_row()

    @staticmethod
    def _replace_participants(
        conn: sqlite3.Connection,
        key: str,
        items: list[EventParticipant],
    ) -> None:
        conn.execute("DELETE FROM event_participants WHERE match_key = ?", (key,))
        for position, participant in enumerate(items):
            conn.execute(
                """
                INSERT INTO event_participants(match_key, position, name, email, is_organizer, is_current_user)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    key,
                    position,
                    participant.name,
                    participant.email,
                    1 if participant.is_organizer else 0,
                    1 if participant.is_current_user else 0,
                ),
            )

    def get_participants(self, event: ExistingEvent | IncomingEvent, *, normalize_start: bool = False) -> list[EventParticipant]:
        key = match_key(event, normalize_start=normalize_start)
        if key is None:
            return []
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT name, email, is_organizer, is_current_user
                    FROM event_participants
                    WHERE match_key = ?
                    ORDER BY position
                    """,
                    (key,),
                ).fetchall()
        return [
            EventParticipant(
                name=row["name"],
                email=row["email"],
                is_organizer=bool(row["is_organizer"]),
                is_current_user=bool(row["is_current_user"]),
            )
            for row in rows
        ]

    # Sync runs

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, added, updated, deleted)
                    VALUES (?, ?, 'running', ?, 0, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        added: int = 0,
        updated: int = 0,
        deleted: int = 0,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, added = ?, updated = ?, deleted = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(added),
                        int(updated),
                        int(deleted),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, added, updated, deleted
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]
