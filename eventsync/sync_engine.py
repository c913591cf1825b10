from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from eventsync.caldav_client import CalDAVEventSource
from eventsync.config_manager import ConfigManager
from eventsync.existing import fetch_existing_events
from eventsync.incoming import CalendarFetchError, EventSource, fetch_incoming_events
from eventsync.meeting_link import extract_meeting_link as default_extract_meeting_link
from eventsync.models import AppConfig, CalendarInfo, SyncContext, SyncDiff, SyncResult, sync_window
from eventsync.reconciler import attach_participants, sync_events
from eventsync.state_store import StateStore

logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        source: EventSource | None = None,
        extract_meeting_link: Callable[[str], str | None] = default_extract_meeting_link,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.source = source
        self.extract_meeting_link = extract_meeting_link

    def _resolve_source(self, config: AppConfig) -> EventSource | None:
        if self.source is not None:
            return self.source
        if not config.caldav.base_url or not config.caldav.username:
            return None
        return CalDAVEventSource(config.caldav)

    def refresh_calendars(self, source: EventSource) -> list[CalendarInfo]:
        """Record provider calendars locally. New calendars start disabled, vanished ones get disabled."""
        list_calendars = getattr(source, "list_calendars", None)
        if list_calendars is None:
            return self.state_store.list_calendars()
        present: set[str] = set()
        for provider_calendar in list_calendars():
            self.state_store.upsert_calendar(provider_calendar.tracking_id_calendar, provider_calendar.name)
            present.add(provider_calendar.tracking_id_calendar)
        for calendar in self.state_store.disable_missing_calendars(present):
            logger.warning(
                "Calendar %s (%s) is no longer listed by the provider, disabling it",
                calendar.name,
                calendar.tracking_id_calendar,
            )
        return self.state_store.list_calendars()

    def build_context(self, config: AppConfig, now: datetime | None = None) -> SyncContext:
        window_from, window_to = sync_window(
            now or datetime.now(timezone.utc),
            config.sync.window_days_back,
            config.sync.window_days_ahead,
        )
        calendars = self.state_store.list_calendars()
        return SyncContext(
            window_from=window_from,
            window_to=window_to,
            calendar_ids=frozenset(calendar.id for calendar in calendars if calendar.enabled),
            calendar_tracking_id_to_id={calendar.tracking_id_calendar: calendar.id for calendar in calendars},
            normalize_start_times=config.sync.normalize_start_times,
        )

    async def sync(self, ctx: SyncContext, source: EventSource, config: AppConfig) -> SyncDiff:
        """Fetch, reconcile and apply one window. Raises ``CalendarFetchError`` before any write."""
        fetched = await fetch_incoming_events(
            ctx,
            source,
            timezone=config.sync.timezone,
            extract_meeting_link=self.extract_meeting_link,
            timeout_seconds=config.sync.fetch_timeout_seconds,
        )
        existing = fetch_existing_events(ctx, self.state_store)
        diff = sync_events(ctx, incoming=fetched.events, existing=existing)
        participants = attach_participants(
            fetched.events,
            fetched.participants,
            normalize_start=ctx.normalize_start_times,
        )
        self.state_store.apply_diff(ctx, diff, participants, user_id=config.store.user_id)
        return diff

    def run_once(self, trigger: str = "manual", now: datetime | None = None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)
        status = "error"
        message = ""
        diff = SyncDiff()

        try:
            config = self.config_manager.load()
            source = self._resolve_source(config)
            if source is None:
                status = "skipped"
                message = "CalDAV config missing base_url/username. Sync skipped."
                logger.info(message)
            else:
                self.refresh_calendars(source)
                ctx = self.build_context(config, now)
                logger.info(
                    "Sync run %d (%s): %d enabled calendars, window %s to %s",
                    run_id,
                    trigger,
                    len(ctx.enabled_tracking_ids()),
                    ctx.from_iso,
                    ctx.to_iso,
                )
                diff = asyncio.run(self.sync(ctx, source, config))
                status = "success"
                message = (
                    f"added={len(diff.to_add)} updated={len(diff.to_update)} deleted={len(diff.to_delete)}"
                )
        except CalendarFetchError as exc:
            message = str(exc)
            logger.warning("Sync run %d aborted: %s", run_id, message)
        except Exception as exc:
            message = f"{exc.__class__.__name__}: {exc}"
            logger.exception("Sync run %d failed", run_id)

        duration_ms = _elapsed_ms(started_at)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            added=len(diff.to_add),
            updated=len(diff.to_update),
            deleted=len(diff.to_delete),
        )
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            added=len(diff.to_add),
            updated=len(diff.to_update),
            deleted=len(diff.to_delete),
            trigger=trigger,
        )
