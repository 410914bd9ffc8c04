"""
Attendance classifier - decides a booking's outcome from calendar signals.

The calendar API does not expose who actually joined a Meet call, so the
decision is inferred from the invite responses and whether the event was
touched during the meeting window. Rules are evaluated in order and the
first one that returns a Classification wins.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from models.schemas import (
    ActionType, Booking, BookingOutcome, CalendarEvent, Stage,
)


@dataclass
class PlannedAction:
    action_type: ActionType
    reasoning: str
    suggested_stage: Optional[Stage] = None
    # Case-insensitive fragment used to skip the action if one like it exists
    dedup_fragment: Optional[str] = None


@dataclass
class Classification:
    outcome: BookingOutcome = BookingOutcome.PENDING
    defer: bool = False
    customer_joined: bool = False
    owner_joined: bool = False
    attendee_count: int = 0
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    actions: list[PlannedAction] = field(default_factory=list)
    rule: str = ""


@dataclass
class MeetingSignals:
    """Everything the rules look at, derived once per booking."""
    booking: Booking
    event: CalendarEvent
    now: datetime
    customer_accepted: bool
    customer_declined: bool
    customer_no_response: bool
    active: bool
    attendee_count: int
    no_show_grace: timedelta

    @property
    def scheduled_end(self) -> datetime:
        return self.booking.scheduled_end


def event_was_active(event: CalendarEvent, scheduled_start: datetime, min_delta_seconds: int = 60) -> bool:
    """
    True when the event was modified at or after the scheduled start and the
    modification is distinguishable from creation.
    """
    if event.updated is None or event.created is None:
        return False
    if event.updated < scheduled_start:
        return False
    return abs((event.updated - event.created).total_seconds()) >= min_delta_seconds


def gather_signals(
    booking: Booking,
    event: CalendarEvent,
    now: datetime,
    no_show_grace_minutes: int = 15,
    activity_min_delta_seconds: int = 60,
) -> MeetingSignals:
    accepted = declined = no_response = False
    for attendee in event.attendees:
        if attendee.is_self:
            continue
        if attendee.response_status == "accepted":
            accepted = True
        elif attendee.response_status == "declined":
            declined = True
        else:
            no_response = True

    return MeetingSignals(
        booking=booking,
        event=event,
        now=now,
        customer_accepted=accepted,
        customer_declined=declined,
        customer_no_response=no_response,
        active=event_was_active(event, booking.scheduled_at, activity_min_delta_seconds),
        attendee_count=len(event.attendees),
        no_show_grace=timedelta(minutes=no_show_grace_minutes),
    )


# ──────────────────────────────────────────────────────────────
#  Rules
# ──────────────────────────────────────────────────────────────

def _completed(s: MeetingSignals, reasoning: str, attendee_count: int) -> Classification:
    return Classification(
        outcome=BookingOutcome.COMPLETED,
        customer_joined=True,
        owner_joined=True,
        attendee_count=attendee_count,
        actual_start=s.booking.scheduled_at,
        actual_end=s.scheduled_end,
        actions=[PlannedAction(ActionType.AUTO_MOVE, reasoning)],
    )


def _no_show(reasoning: str, owner_joined: bool) -> Classification:
    return Classification(
        outcome=BookingOutcome.NO_SHOW,
        owner_joined=owner_joined,
        actions=[PlannedAction(ActionType.AUTO_NO_SHOW, reasoning)],
    )


def _pending_reminder(reasoning: str, fragment: str) -> Classification:
    return Classification(
        outcome=BookingOutcome.PENDING,
        actions=[PlannedAction(ActionType.REMINDER_SENT, reasoning, dedup_fragment=fragment)],
    )


def rule_event_cancelled(s: MeetingSignals) -> Optional[Classification]:
    if s.event.cancelled:
        return Classification(
            outcome=BookingOutcome.CANCELLED,
            actions=[PlannedAction(ActionType.AUTO_MOVE, "Calendar event was cancelled")],
        )
    return None


def rule_customer_declined(s: MeetingSignals) -> Optional[Classification]:
    if s.customer_declined:
        return Classification(
            outcome=BookingOutcome.CANCELLED,
            actions=[PlannedAction(ActionType.AUTO_MOVE, "Customer declined the calendar invite")],
        )
    return None


def rule_too_early(s: MeetingSignals) -> Optional[Classification]:
    # Unanswered video invites are settled as soon as the booking is selected
    unanswered = s.booking.is_video and s.customer_no_response and not s.customer_accepted
    if s.now < s.scheduled_end + s.no_show_grace and not unanswered:
        return Classification(defer=True)
    return None


def rule_in_person(s: MeetingSignals) -> Optional[Classification]:
    if not s.booking.is_video:
        return _pending_reminder(
            "In-person visit time has passed. Please update the outcome.",
            "update the outcome",
        )
    return None


def rule_accepted_and_active(s: MeetingSignals) -> Optional[Classification]:
    if s.customer_accepted and s.active:
        return _completed(
            s, "Customer accepted invite and event shows activity during meeting window", 2,
        )
    return None


def rule_accepted_no_activity(s: MeetingSignals) -> Optional[Classification]:
    if s.customer_accepted and not s.active:
        return _pending_reminder(
            "Customer accepted invite but no meeting activity detected. Please confirm the outcome.",
            "confirm the outcome",
        )
    return None


def rule_no_response_no_activity(s: MeetingSignals) -> Optional[Classification]:
    if s.customer_no_response and not s.active:
        return _no_show(
            "Customer never responded to invite and no meeting activity detected",
            owner_joined=True,
        )
    return None


def rule_active(s: MeetingSignals) -> Optional[Classification]:
    if s.active:
        return _completed(s, "Event shows activity during meeting window", s.attendee_count or 2)
    return None


def rule_no_activity(s: MeetingSignals) -> Optional[Classification]:
    return _no_show("No meeting activity detected after scheduled end time", owner_joined=False)


RULES: list[Callable[[MeetingSignals], Optional[Classification]]] = [
    rule_event_cancelled,
    rule_customer_declined,
    rule_too_early,
    rule_in_person,
    rule_accepted_and_active,
    rule_accepted_no_activity,
    rule_no_response_no_activity,
    rule_active,
    rule_no_activity,
]


def classify(signals: MeetingSignals) -> Classification:
    for rule in RULES:
        result = rule(signals)
        if result is not None:
            result.rule = rule.__name__
            return result
    fallback = rule_no_activity(signals)
    fallback.rule = "rule_no_activity"
    return fallback
