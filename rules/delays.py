"""
Delay rules - when a queued message becomes due.

  immediate               → due on the next queue pass
  minutes_after_stage     → now + delay (0 = next pass)
  minutes_after_enquiry   → treated like minutes_after_stage, relative to now
  minutes_before_booking  → booking_time - delay, skipped when unknown or already past
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from models.schemas import DelayRule


class ScheduleDecision(NamedTuple):
    skip: bool
    scheduled_for: Optional[datetime] = None
    reason: str = ""


def compute_scheduled_for(
    rule: DelayRule,
    delay_minutes: int,
    now: datetime,
    booking_time: Optional[datetime] = None,
) -> ScheduleDecision:
    delay = timedelta(minutes=max(delay_minutes or 0, 0))

    if rule == DelayRule.IMMEDIATE:
        return ScheduleDecision(skip=False)

    if rule == DelayRule.MINUTES_BEFORE_BOOKING:
        if booking_time is None:
            return ScheduleDecision(skip=True, reason="booking_time_unknown")
        send_at = booking_time - delay
        if send_at <= now:
            return ScheduleDecision(skip=True, reason="window_passed")
        return ScheduleDecision(skip=False, scheduled_for=send_at)

    if rule in (DelayRule.MINUTES_AFTER_STAGE, DelayRule.MINUTES_AFTER_ENQUIRY):
        if not delay:
            return ScheduleDecision(skip=False)
        return ScheduleDecision(skip=False, scheduled_for=now + delay)

    return ScheduleDecision(skip=True, reason=f"unknown_delay_rule:{rule}")
