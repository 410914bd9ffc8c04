"""
Meeting Tracker - infers booking outcomes from the owner's calendar.

Two sweeps, both bounded and idempotent:

  monitor_upcoming_bookings   next 24h: cancellations, calendar-side
                              reschedules, declined / unanswered invites
  process_meeting_tracking    ended meetings: classify → persist → act

run_tracking() is the cron entry point and runs both, pre-meeting first.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from backend.calendar import CalendarProvider
from config.settings import EngineConfig
from database.store_base import CRMStore
from models.schemas import (
    ActionType, Booking, BookingOutcome, CalendarEvent, PostCallAction, Task,
    TrackingStats, TrackingStatus,
)
from templates.variables import format_date, format_time
from tracking.classifier import Classification, classify, gather_signals
from tracking.outcomes import (
    handle_cancelled, handle_completed, handle_no_show, load_parties,
    queue_invite_declined_sms,
)

logger = structlog.get_logger()


class MeetingTracker:

    def __init__(
        self,
        store: CRMStore,
        calendar: Optional[CalendarProvider],
        config: EngineConfig,
        timezone_name: str = "Europe/London",
    ):
        self.store = store
        self.calendar = calendar
        self.config = config
        self.timezone_name = timezone_name
        self._post_lock = asyncio.Lock()
        self._pre_lock = asyncio.Lock()

    @property
    def calendar_configured(self) -> bool:
        return self.calendar is not None and self.calendar.configured

    # ── Cron entry point ──────────────────────────────────────

    async def run_tracking(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        if not self.calendar_configured:
            logger.info("tracking_skipped", reason="calendar_not_configured")
            return {"checked": 0, "updated": 0, "errors": 0, "preMeetingFlagged": 0}

        try:
            flagged = await self.monitor_upcoming_bookings(now)
        except Exception as e:
            logger.error("pre_meeting_sweep_failed", error=str(e))
            flagged = 0

        stats = await self.process_meeting_tracking(now)
        return {
            "checked": stats.checked,
            "updated": stats.updated,
            "errors": stats.errors,
            "preMeetingFlagged": flagged,
        }

    # ══════════════════════════════════════════════════════════
    #  POST-MEETING SWEEP
    # ══════════════════════════════════════════════════════════

    async def process_meeting_tracking(self, now: Optional[datetime] = None) -> TrackingStats:
        now = now or datetime.now(timezone.utc)
        stats = TrackingStats()
        if not self.calendar_configured:
            logger.info("post_meeting_sweep_skipped", reason="calendar_not_configured")
            return stats
        if self._post_lock.locked():
            logger.info("post_meeting_sweep_skipped", reason="already_running")
            return stats

        async with self._post_lock:
            bookings = await self.store.bookings_due_for_tracking(
                now, self.config.check_grace_minutes, self.config.tracking_batch_size,
            )
            stats.checked = len(bookings)
            for booking in bookings:
                try:
                    if await self._track_booking(booking, now):
                        stats.updated += 1
                except Exception as e:
                    stats.errors += 1
                    logger.error("tracking_booking_error", booking_id=booking.id, error=str(e))

        logger.info("post_meeting_sweep_complete", checked=stats.checked,
                    updated=stats.updated, errors=stats.errors)
        return stats

    async def _track_booking(self, booking: Booking, now: datetime) -> bool:
        """Returns True when the booking was updated; fetch errors propagate."""
        event = await self.calendar.get_event(booking.google_event_id)

        signals = gather_signals(
            booking, event, now,
            no_show_grace_minutes=self.config.no_show_grace_minutes,
            activity_min_delta_seconds=self.config.activity_min_delta_seconds,
        )
        result = classify(signals)
        if result.defer:
            logger.info("tracking_deferred", booking_id=booking.id)
            return False

        await self._persist(booking, result, now)
        await self._run_handler(booking, result.outcome, now)
        logger.info("booking_tracked", booking_id=booking.id,
                    outcome=result.outcome.value, rule=result.rule)
        return True

    async def _persist(self, booking: Booking, result: Classification, now: datetime):
        fields: dict[str, Any] = {
            "tracking_status": TrackingStatus.CHECKED,
            "customer_joined": result.customer_joined,
            "owner_joined": result.owner_joined,
            "attendee_count": result.attendee_count,
        }
        if result.actual_start:
            fields["actual_start"] = result.actual_start
        if result.actual_end:
            fields["actual_end"] = result.actual_end
        if result.outcome != BookingOutcome.PENDING:
            fields["outcome"] = result.outcome
        await self.store.update_booking(booking.id, **fields)

        for action in result.actions:
            if action.dedup_fragment and await self.store.has_action_like(booking.id, action.dedup_fragment):
                logger.info("tracking_action_duplicate", booking_id=booking.id,
                            fragment=action.dedup_fragment)
                continue
            await self.store.add_action(PostCallAction(
                booking_id=booking.id,
                opportunity_id=booking.opportunity_id,
                action_type=action.action_type,
                reasoning=action.reasoning,
                suggested_stage=action.suggested_stage,
                created_at=now,
            ))

    async def _run_handler(self, booking: Booking, outcome: BookingOutcome, now: datetime):
        if outcome == BookingOutcome.NO_SHOW:
            await handle_no_show(self.store, booking, now, self.config.site_url, self.timezone_name)
        elif outcome == BookingOutcome.CANCELLED:
            await handle_cancelled(self.store, booking, now)
        elif outcome == BookingOutcome.COMPLETED:
            await handle_completed(self.store, booking, now)

    # ══════════════════════════════════════════════════════════
    #  PRE-MEETING SWEEP
    # ══════════════════════════════════════════════════════════

    async def monitor_upcoming_bookings(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        if not self.calendar_configured:
            logger.info("pre_meeting_sweep_skipped", reason="calendar_not_configured")
            return 0
        if self._pre_lock.locked():
            logger.info("pre_meeting_sweep_skipped", reason="already_running")
            return 0

        async with self._pre_lock:
            window_end = now + timedelta(hours=self.config.upcoming_window_hours)
            upcoming = await self.store.upcoming_bookings(now, window_end, self.config.tracking_batch_size)
            flagged = 0
            for booking in upcoming:
                if not booking.google_event_id:
                    continue
                try:
                    event = await self.calendar.get_event(booking.google_event_id)
                    flagged += await self._inspect_upcoming(booking, event, now)
                except Exception as e:
                    logger.error("pre_meeting_check_error", booking_id=booking.id, error=str(e))

        logger.info("pre_meeting_sweep_complete", scanned=len(upcoming), flagged=flagged)
        return flagged

    async def _inspect_upcoming(self, booking: Booking, event: CalendarEvent, now: datetime) -> int:
        if event.cancelled:
            await self.store.update_booking(
                booking.id, outcome=BookingOutcome.CANCELLED, tracking_status=TrackingStatus.CHECKED,
            )
            await handle_cancelled(self.store, booking, now)
            await self._log(booking, ActionType.AUTO_MOVE, "Calendar event was cancelled before the meeting", now)
            return 1

        drift = timedelta(minutes=self.config.reschedule_drift_minutes)
        if event.start and abs(event.start - booking.scheduled_at) > drift:
            await self.store.update_booking(booking.id, scheduled_at=event.start)
            await self._log(
                booking, ActionType.AUTO_MOVE,
                f"Meeting rescheduled via calendar to {format_date(event.start, self.timezone_name)} "
                f"at {format_time(event.start, self.timezone_name)}",
                now,
            )
            logger.info("booking_rescheduled_externally", booking_id=booking.id,
                        new_start=event.start.isoformat())
            return 1

        guests = [a for a in event.attendees if not a.is_self]
        flagged = 0

        if any(a.response_status == "declined" for a in guests):
            if not await self.store.has_action_like(booking.id, "declined"):
                await self._flag_declined(booking, now)
                flagged += 1

        hours_until = (booking.scheduled_at - now).total_seconds() / 3600
        if (
            any(a.response_status == "needsAction" for a in guests)
            and hours_until <= self.config.no_response_window_hours
        ):
            if not await self.store.has_action_like(booking.id, "no response"):
                await self._flag_no_response(booking, hours_until, now)
                flagged += 1

        return flagged

    async def _flag_declined(self, booking: Booking, now: datetime):
        opportunity, lead = await load_parties(self.store, booking)
        if opportunity is None:
            return
        name = lead.name if lead else "Customer"
        await self.store.create_task(Task(
            opportunity_id=booking.opportunity_id,
            type="invite_declined",
            due_at=now,
            owner_user_id=opportunity.owner_user_id,
            description=f"{name} declined the {booking.type.value} invite. Reach out to reschedule.",
        ))
        await self._log(booking, ActionType.REMINDER_SENT,
                        f"Customer declined calendar invite for {booking.type.value}", now)
        if lead is not None:
            await queue_invite_declined_sms(self.store, booking, opportunity, lead, now, self.config.site_url)
        logger.info("invite_declined_flagged", booking_id=booking.id)

    async def _flag_no_response(self, booking: Booking, hours_until: float, now: datetime):
        opportunity = await self.store.get_opportunity(booking.opportunity_id)
        if opportunity is None:
            return
        hours = round(hours_until)
        await self.store.create_task(Task(
            opportunity_id=booking.opportunity_id,
            type="invite_no_response",
            due_at=now,
            owner_user_id=opportunity.owner_user_id,
            description=(
                f"Customer hasn't responded to the {booking.type.value} invite "
                f"({hours}h away). Consider reaching out."
            ),
        ))
        await self._log(
            booking, ActionType.REMINDER_SENT,
            f"Customer has not responded to invite, meeting in {hours} hours (no response flag)",
            now,
        )
        logger.info("invite_no_response_flagged", booking_id=booking.id, hours_until=hours)

    async def _log(self, booking: Booking, action_type: ActionType, reasoning: str, now: datetime):
        await self.store.add_action(PostCallAction(
            booking_id=booking.id,
            opportunity_id=booking.opportunity_id,
            action_type=action_type,
            reasoning=reasoning,
            created_at=now,
        ))
