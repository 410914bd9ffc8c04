"""Tests for the post-meeting and pre-meeting tracking sweeps."""
from datetime import datetime, timedelta, timezone

import pytest

from backend.calendar import MockCalendarClient
from config.settings import EngineConfig
from models.schemas import (
    ActionType, Booking, BookingOutcome, BookingType, CalendarAttendee, CalendarEvent,
    Channel, TrackingStatus,
)
from tracking.meeting_tracker import MeetingTracker
from tracking.outcomes import INVITE_DECLINED_TEMPLATE, NO_SHOW_TEMPLATE

START = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)


def make_event(response="needsAction", status="confirmed", start=START, updated=None) -> CalendarEvent:
    created = START - timedelta(days=2)
    return CalendarEvent(
        id="evt-1",
        status=status,
        created=created,
        updated=updated or created,
        start=start,
        end=start + timedelta(minutes=30),
        attendees=[
            CalendarAttendee(email="sam@paxbespoke.uk", response_status="accepted", is_self=True),
            CalendarAttendee(email="jane@example.com", response_status=response),
        ],
    )


@pytest.fixture
def tracker(store, calendar) -> MeetingTracker:
    return MeetingTracker(store, calendar, EngineConfig())


async def book(store, kind=BookingType.CALL1, event_id="evt-1", booking_id="b-1") -> Booking:
    return await store.upsert_booking(Booking(
        id=booking_id, opportunity_id="opp-1", type=kind, scheduled_at=START,
        duration_min=30, google_event_id=event_id,
    ))


async def task_types(store) -> list[str]:
    return [t.type for t in await store.list_tasks("opp-1")]


# ──────────────────────────────────────────────────────────────
#  Post-meeting sweep
# ──────────────────────────────────────────────────────────────

class TestPostMeetingSweep:
    @pytest.mark.asyncio
    async def test_no_show_flow(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())

        stats = await tracker.process_meeting_tracking(now=START + timedelta(minutes=41))

        assert (stats.checked, stats.updated, stats.errors) == (1, 1, 0)
        booking = await crm.store.get_booking("b-1")
        assert booking.outcome == BookingOutcome.NO_SHOW
        assert booking.tracking_status == TrackingStatus.CHECKED
        assert booking.owner_joined is True

        messages = await crm.store.list_messages("lead-1")
        assert {m.channel for m in messages} == {Channel.EMAIL, Channel.SMS, Channel.WHATSAPP}
        assert {m.template_slug for m in messages} == {NO_SHOW_TEMPLATE}
        assert "type=call1" in messages[0].metadata["body"]
        assert messages[0].metadata["subject"] == "We missed you, rebook your consultation"
        assert await task_types(crm.store) == ["follow_up_no_show"]

        actions = await crm.store.list_actions("b-1")
        assert [a.action_type for a in actions] == [ActionType.AUTO_NO_SHOW]

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())
        now = START + timedelta(minutes=41)
        await tracker.process_meeting_tracking(now=now)

        stats = await tracker.process_meeting_tracking(now=now + timedelta(minutes=5))

        assert stats.checked == 0
        assert len(await crm.store.list_messages("lead-1")) == 3
        assert await task_types(crm.store) == ["follow_up_no_show"]

    @pytest.mark.asyncio
    async def test_not_selected_before_check_grace(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())
        stats = await tracker.process_meeting_tracking(now=START + timedelta(minutes=39))
        assert stats.checked == 0
        assert calendar.calls == []

    @pytest.mark.asyncio
    async def test_booking_without_event_is_left_for_manual_input(self, crm, calendar, tracker):
        await book(crm.store, event_id=None)
        stats = await tracker.process_meeting_tracking(now=START + timedelta(hours=2))
        assert stats.checked == 0
        assert (await crm.store.get_booking("b-1")).tracking_status == TrackingStatus.PENDING

    @pytest.mark.asyncio
    async def test_accepted_inside_grace_is_deferred(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(response="accepted"))

        stats = await tracker.process_meeting_tracking(now=START + timedelta(minutes=41))

        assert (stats.checked, stats.updated) == (1, 0)
        booking = await crm.store.get_booking("b-1")
        assert booking.tracking_status == TrackingStatus.PENDING
        assert await crm.store.list_actions("b-1") == []

    @pytest.mark.asyncio
    async def test_completed_meeting_prompts_for_notes(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(response="accepted", updated=START + timedelta(minutes=5)))
        now = START + timedelta(minutes=50)

        stats = await tracker.process_meeting_tracking(now=now)

        assert stats.updated == 1
        booking = await crm.store.get_booking("b-1")
        assert booking.outcome == BookingOutcome.COMPLETED
        assert booking.customer_joined is True
        assert booking.attendee_count == 2
        assert booking.actual_end == START + timedelta(minutes=30)

        tasks = await crm.store.list_tasks("opp-1")
        assert [t.type for t in tasks] == ["post_call_notes"]
        assert tasks[0].due_at == now + timedelta(hours=1)
        assert tasks[0].owner_user_id == "owner-1"
        reasons = [a.reasoning for a in await crm.store.list_actions("b-1")]
        assert "Meeting completed, prompted owner for post-call notes" in reasons
        assert await crm.store.list_messages("lead-1") == []

    @pytest.mark.asyncio
    async def test_cancelled_event_creates_reschedule_task(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(status="cancelled"))
        await tracker.process_meeting_tracking(now=START + timedelta(minutes=50))

        assert (await crm.store.get_booking("b-1")).outcome == BookingOutcome.CANCELLED
        assert await task_types(crm.store) == ["reschedule_cancelled"]

    @pytest.mark.asyncio
    async def test_owner_reminder_is_not_repeated(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(response="accepted"))
        now = START + timedelta(minutes=50)
        await tracker.process_meeting_tracking(now=now)

        booking = await crm.store.get_booking("b-1")
        assert booking.outcome == BookingOutcome.PENDING
        assert booking.tracking_status == TrackingStatus.CHECKED

        # Re-open the booking and sweep again; the reminder already exists
        await crm.store.update_booking("b-1", tracking_status=TrackingStatus.PENDING)
        await tracker.process_meeting_tracking(now=now + timedelta(minutes=10))

        actions = await crm.store.list_actions("b-1")
        assert len(actions) == 1
        assert "confirm the outcome" in actions[0].reasoning

    @pytest.mark.asyncio
    async def test_in_person_visit_gets_reminder(self, crm, calendar, tracker):
        await book(crm.store, kind=BookingType.ONBOARDING)
        calendar.add(make_event(response="accepted"))
        await tracker.process_meeting_tracking(now=START + timedelta(hours=1))

        booking = await crm.store.get_booking("b-1")
        assert booking.outcome == BookingOutcome.PENDING
        actions = await crm.store.list_actions("b-1")
        assert actions[0].action_type == ActionType.REMINDER_SENT
        assert "update the outcome" in actions[0].reasoning

    @pytest.mark.asyncio
    async def test_fetch_failure_is_counted_and_booking_untouched(self, crm, calendar, tracker):
        await book(crm.store)
        await book(crm.store, event_id="evt-missing", booking_id="b-2")
        calendar.add(make_event())
        calendar.failing.add("evt-1")

        stats = await tracker.process_meeting_tracking(now=START + timedelta(minutes=41))

        assert (stats.checked, stats.updated, stats.errors) == (2, 0, 2)
        assert (await crm.store.get_booking("b-1")).tracking_status == TrackingStatus.PENDING

    @pytest.mark.asyncio
    async def test_batch_limit(self, crm, calendar, store):
        tracker = MeetingTracker(store, calendar, EngineConfig(tracking_batch_size=1))
        await book(crm.store)
        await book(crm.store, booking_id="b-2")
        calendar.add(make_event())
        stats = await tracker.process_meeting_tracking(now=START + timedelta(hours=1))
        assert stats.checked == 1

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())
        async with tracker._post_lock:
            stats = await tracker.process_meeting_tracking(now=START + timedelta(hours=1))
        assert stats.checked == 0


# ──────────────────────────────────────────────────────────────
#  Pre-meeting sweep
# ──────────────────────────────────────────────────────────────

BEFORE = START - timedelta(hours=2)


class TestPreMeetingSweep:
    @pytest.mark.asyncio
    async def test_cancelled_before_meeting(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(status="cancelled"))

        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 1

        booking = await crm.store.get_booking("b-1")
        assert booking.outcome == BookingOutcome.CANCELLED
        assert booking.tracking_status == TrackingStatus.CHECKED
        assert await task_types(crm.store) == ["reschedule_cancelled"]
        actions = await crm.store.list_actions("b-1")
        assert actions[0].reasoning == "Calendar event was cancelled before the meeting"

    @pytest.mark.asyncio
    async def test_reschedule_in_calendar_moves_booking(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(start=START + timedelta(hours=1)))

        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 1

        booking = await crm.store.get_booking("b-1")
        assert booking.scheduled_at == START + timedelta(hours=1)
        actions = await crm.store.list_actions("b-1")
        assert actions[0].reasoning == "Meeting rescheduled via calendar to Fri 10 Jan at 11:00"

    @pytest.mark.asyncio
    async def test_small_drift_is_ignored(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(response="accepted", start=START + timedelta(minutes=3)))
        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 0
        assert (await crm.store.get_booking("b-1")).scheduled_at == START

    @pytest.mark.asyncio
    async def test_declined_invite_flagged_once(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(response="declined"))

        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 1
        assert await tracker.monitor_upcoming_bookings(now=BEFORE + timedelta(minutes=5)) == 0

        assert await task_types(crm.store) == ["invite_declined"]
        messages = await crm.store.list_messages("lead-1")
        assert len(messages) == 1
        assert messages[0].channel == Channel.SMS
        assert messages[0].template_slug == INVITE_DECLINED_TEMPLATE
        assert "type=call1" in messages[0].metadata["body"]
        actions = await crm.store.list_actions("b-1")
        assert actions[0].reasoning == "Customer declined calendar invite for call1"

    @pytest.mark.asyncio
    async def test_declined_without_phone_skips_sms(self, crm, calendar, tracker):
        lead = crm.lead.model_copy(update={"phone": None})
        await crm.store.upsert_lead(lead)
        await book(crm.store)
        calendar.add(make_event(response="declined"))

        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 1
        assert await crm.store.list_messages("lead-1") == []

    @pytest.mark.asyncio
    async def test_no_response_close_to_meeting(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())

        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 1
        assert await tracker.monitor_upcoming_bookings(now=BEFORE + timedelta(minutes=5)) == 0

        assert await task_types(crm.store) == ["invite_no_response"]
        actions = await crm.store.list_actions("b-1")
        assert "2 hours" in actions[0].reasoning
        assert "(no response flag)" in actions[0].reasoning

    @pytest.mark.asyncio
    async def test_no_response_far_from_meeting_waits(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())
        assert await tracker.monitor_upcoming_bookings(now=START - timedelta(hours=20)) == 0
        assert await task_types(crm.store) == []

    @pytest.mark.asyncio
    async def test_outside_window_not_inspected(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event(status="cancelled"))
        assert await tracker.monitor_upcoming_bookings(now=START - timedelta(hours=30)) == 0
        assert calendar.calls == []

    @pytest.mark.asyncio
    async def test_fetch_failure_is_skipped(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.failing.add("evt-1")
        assert await tracker.monitor_upcoming_bookings(now=BEFORE) == 0


# ──────────────────────────────────────────────────────────────
#  Cron entry point
# ──────────────────────────────────────────────────────────────

class TestRunTracking:
    @pytest.mark.asyncio
    async def test_unconfigured_calendar_returns_zeros(self, crm):
        tracker = MeetingTracker(crm.store, None, EngineConfig())
        assert await tracker.run_tracking(now=START) == {
            "checked": 0, "updated": 0, "errors": 0, "preMeetingFlagged": 0,
        }

    @pytest.mark.asyncio
    async def test_runs_both_sweeps(self, crm, calendar, tracker):
        await book(crm.store)
        calendar.add(make_event())
        await crm.store.upsert_booking(Booking(
            id="b-2", opportunity_id="opp-1", type=BookingType.CALL2,
            scheduled_at=START + timedelta(hours=3), google_event_id="evt-2",
        ))
        upcoming = make_event(response="declined", start=START + timedelta(hours=3))
        upcoming.id = "evt-2"
        calendar.add(upcoming)

        result = await tracker.run_tracking(now=START + timedelta(minutes=41))

        assert result == {"checked": 1, "updated": 1, "errors": 0, "preMeetingFlagged": 1}

    @pytest.mark.asyncio
    async def test_pre_meeting_failure_does_not_block_post_meeting(self, crm, calendar, tracker, monkeypatch):
        await book(crm.store)
        calendar.add(make_event())

        async def broken(start, end, limit):
            raise RuntimeError("query failed")

        monkeypatch.setattr(crm.store, "upcoming_bookings", broken)
        result = await tracker.run_tracking(now=START + timedelta(minutes=41))
        assert result["preMeetingFlagged"] == 0
        assert result["updated"] == 1
