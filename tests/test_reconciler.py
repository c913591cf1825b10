import unittest
from datetime import datetime, timezone

from eventsync.match_key import match_key
from eventsync.models import (
    EventParticipant,
    ExistingEvent,
    IncomingEvent,
    RecurrenceState,
    SyncContext,
    SyncDiff,
)
from eventsync.reconciler import attach_participants, sync_events


def _ctx(*calendar_ids: str) -> SyncContext:
    return SyncContext(
        window_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
        window_to=datetime(2024, 12, 31, tzinfo=timezone.utc),
        calendar_ids=frozenset(calendar_ids),
        calendar_tracking_id_to_id={f"provider-{cid}": cid for cid in calendar_ids},
    )


def _incoming(tracking_id: str, started_at: str, recurring: bool = False, **kwargs) -> IncomingEvent:
    return IncomingEvent(
        tracking_id_event=tracking_id,
        tracking_id_calendar=kwargs.pop("tracking_id_calendar", "provider-cA"),
        started_at=started_at,
        has_recurrence_rules=RecurrenceState.from_flag(recurring),
        **kwargs,
    )


def _apply(ctx: SyncContext, existing: list[ExistingEvent], diff: SyncDiff) -> list[ExistingEvent]:
    deleted = set(diff.to_delete)
    updated = {event.id: event for event in diff.to_update}
    rows = [updated.get(event.id, event) for event in existing if event.id not in deleted]
    for index, incoming in enumerate(diff.to_add):
        rows.append(
            ExistingEvent(
                id=f"new-{index}",
                calendar_id=ctx.calendar_tracking_id_to_id[incoming.tracking_id_calendar],
            ).merged_with(incoming)
        )
    return rows


class ReconcilerTests(unittest.TestCase):
    def test_end_to_end_scenario(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-06-01T09:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
            )
        ]
        incoming = [_incoming("E1", "2024-06-01T09:00:00Z", title="Standup")]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual(diff.to_add, [])
        self.assertEqual(diff.to_delete, [])
        self.assertEqual(len(diff.to_update), 1)
        self.assertEqual(diff.to_update[0].id, "r1")
        self.assertEqual(diff.to_update[0].calendar_id, "cA")
        self.assertEqual(diff.to_update[0].title, "Standup")

    def test_unknown_recurrence_flag_matches_recurring_incoming(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-01-01T10:00:00Z",
                has_recurrence_rules=RecurrenceState.UNKNOWN,
            )
        ]
        incoming = [_incoming("E1", "2024-01-01T10:00:00Z", recurring=True)]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual(diff.to_add, [])
        self.assertEqual(diff.to_delete, [])
        self.assertEqual(len(diff.to_update), 1)
        self.assertIs(diff.to_update[0].has_recurrence_rules, RecurrenceState.RECURRING)

    def test_unknown_recurrence_flag_prefers_single_probe(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-01-01T10:00:00Z",
            )
        ]
        incoming = [
            _incoming("E1", "2024-01-01T10:00:00Z", recurring=False, title="single"),
            _incoming("E1", "2024-01-01T10:00:00Z", recurring=True, title="series"),
        ]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual([event.title for event in diff.to_update], ["single"])
        self.assertEqual([event.title for event in diff.to_add], ["series"])

    def test_known_flag_does_not_probe_other_state(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-01-01T10:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
            )
        ]
        incoming = [_incoming("E1", "2024-01-01T10:00:00Z", recurring=True)]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual(diff.to_delete, ["r1"])
        self.assertEqual(len(diff.to_add), 1)

    def test_disabled_calendar_rows_are_deleted(self) -> None:
        ctx = _ctx("cal-B")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cal-A",
                tracking_id_event="E1",
                started_at="2024-01-01T10:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
            )
        ]
        incoming = [_incoming("E1", "2024-01-01T10:00:00Z", tracking_id_calendar="provider-cal-B")]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual(diff.to_delete, ["r1"])
        self.assertEqual(diff.to_update, [])

    def test_row_without_tracking_id_is_deleted(self) -> None:
        ctx = _ctx("cA")
        existing = [ExistingEvent(id="r1", calendar_id="cA", started_at="2024-01-01T10:00:00Z")]

        diff = sync_events(ctx, incoming=[], existing=existing)

        self.assertEqual(diff.to_delete, ["r1"])

    def test_unmatched_incoming_is_added_verbatim(self) -> None:
        ctx = _ctx("cA")
        event = _incoming("E9", "2024-03-01T10:00:00Z", title="New")

        diff = sync_events(ctx, incoming=[event], existing=[])

        self.assertEqual(diff.to_add, [event])
        self.assertIs(diff.to_add[0], event)

    def test_update_preserves_local_fields(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-06-01T09:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
                title="Old",
                location="Room 1",
                note="hello",
                user_id="u1",
                created_at="2024-05-01T00:00:00+00:00",
            )
        ]
        incoming = [_incoming("E1", "2024-06-01T09:00:00Z", title="New", location=None)]

        updated = sync_events(ctx, incoming=incoming, existing=existing).to_update[0]

        self.assertEqual(updated.note, "hello")
        self.assertEqual(updated.user_id, "u1")
        self.assertEqual(updated.created_at, "2024-05-01T00:00:00+00:00")
        self.assertEqual(updated.title, "New")
        self.assertIsNone(updated.location)

    def test_unchanged_match_is_not_an_update(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-06-01T09:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
                title="Standup",
            )
        ]
        incoming = [_incoming("E1", "2024-06-01T09:00:00Z", title="Standup")]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertTrue(diff.is_empty)

    def test_duplicate_existing_rows_claim_one_incoming(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id=row_id,
                calendar_id="cA",
                tracking_id_event="E1",
                started_at="2024-06-01T09:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
            )
            for row_id in ("r1", "r2")
        ]
        incoming = [_incoming("E1", "2024-06-01T09:00:00Z", title="Standup")]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual([event.id for event in diff.to_update], ["r1"])
        self.assertEqual(diff.to_delete, ["r2"])
        self.assertEqual(diff.to_add, [])

    def test_duplicate_incoming_keys_keep_last(self) -> None:
        ctx = _ctx("cA")
        incoming = [
            _incoming("E1", "2024-06-01T09:00:00Z", title="first"),
            _incoming("E1", "2024-06-01T09:00:00Z", title="second"),
        ]

        diff = sync_events(ctx, incoming=incoming, existing=[])

        self.assertEqual([event.title for event in diff.to_add], ["second"])

    def test_occurrences_of_one_series_stay_distinct(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(
                id="r1",
                calendar_id="cA",
                tracking_id_event="SERIES",
                started_at="2024-06-03T09:00:00Z",
                has_recurrence_rules=RecurrenceState.RECURRING,
            )
        ]
        incoming = [
            _incoming("SERIES", "2024-06-03T09:00:00Z", recurring=True, title="Weekly"),
            _incoming("SERIES", "2024-06-10T09:00:00Z", recurring=True, title="Weekly"),
        ]

        diff = sync_events(ctx, incoming=incoming, existing=existing)

        self.assertEqual([event.id for event in diff.to_update], ["r1"])
        self.assertEqual([event.started_at for event in diff.to_add], ["2024-06-10T09:00:00Z"])

    def test_result_does_not_depend_on_order(self) -> None:
        ctx = _ctx("cA", "cB")
        existing = [
            ExistingEvent(id="r1", calendar_id="cA", tracking_id_event="E1", started_at="2024-06-01T09:00:00Z"),
            ExistingEvent(id="r2", calendar_id="cB", tracking_id_event="E2", started_at="2024-06-02T09:00:00Z"),
            ExistingEvent(id="r3", calendar_id="cX", tracking_id_event="E3", started_at="2024-06-03T09:00:00Z"),
        ]
        incoming = [
            _incoming("E1", "2024-06-01T09:00:00Z", recurring=True, title="a"),
            _incoming("E4", "2024-06-04T09:00:00Z", title="d"),
        ]

        forward = sync_events(ctx, incoming=incoming, existing=existing)
        backward = sync_events(ctx, incoming=list(reversed(incoming)), existing=list(reversed(existing)))

        self.assertEqual(sorted(forward.to_delete), sorted(backward.to_delete))
        self.assertEqual({e.id for e in forward.to_update}, {e.id for e in backward.to_update})
        self.assertEqual(
            {e.tracking_id_event for e in forward.to_add},
            {e.tracking_id_event for e in backward.to_add},
        )

    def test_applying_diff_twice_is_a_no_op(self) -> None:
        ctx = _ctx("cA")
        existing = [
            ExistingEvent(id="r1", calendar_id="cA", tracking_id_event="E1", started_at="2024-06-01T09:00:00Z"),
            ExistingEvent(id="r2", calendar_id="cA", started_at="2024-06-01T11:00:00Z"),
            ExistingEvent(id="r3", calendar_id="gone", tracking_id_event="E3", started_at="2024-06-01T12:00:00Z"),
            ExistingEvent(
                id="r4",
                calendar_id="cA",
                tracking_id_event="E4",
                started_at="2024-06-01T13:00:00Z",
                has_recurrence_rules=RecurrenceState.SINGLE,
                note="keep me",
            ),
        ]
        incoming = [
            _incoming("E1", "2024-06-01T09:00:00Z", recurring=True, title="Series"),
            _incoming("E4", "2024-06-01T13:00:00Z", title="Renamed"),
            _incoming("E5", "2024-06-02T09:00:00Z", title="Brand new"),
        ]

        first = sync_events(ctx, incoming=incoming, existing=existing)
        after = _apply(ctx, existing, first)
        second = sync_events(ctx, incoming=incoming, existing=after)

        self.assertFalse(first.is_empty)
        self.assertEqual(second.to_add, [])
        self.assertEqual(second.to_update, [])
        self.assertEqual(second.to_delete, [])
        self.assertEqual({row.id for row in after}, {"r1", "r4", "new-0"})


class AttachParticipantsTests(unittest.TestCase):
    def test_every_incoming_key_gets_a_list(self) -> None:
        with_people = _incoming("E1", "2024-06-01T09:00:00Z")
        without_people = _incoming("E2", "2024-06-01T10:00:00Z")
        people = [EventParticipant(email="ann@example.com", is_organizer=True)]

        selected = attach_participants(
            [with_people, without_people],
            {match_key(with_people): people},
        )

        self.assertEqual(selected[match_key(with_people)], people)
        self.assertEqual(selected[match_key(without_people)], [])


if __name__ == "__main__":
    unittest.main()
