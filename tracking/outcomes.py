"""
Outcome handlers - follow-up work once a booking's outcome is known.

  no_show    → rebooking message on every reachable channel + owner task
  cancelled  → reschedule task
  completed  → post-call notes task (due in 1h) + action log entry
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Optional

from database.store_base import CRMStore
from models.schemas import (
    ActionType, Booking, BookingType, Channel, Lead, Opportunity, PostCallAction,
    QueuedMessage, Task,
)
from templates.variables import booking_link, first_name, format_date

logger = structlog.get_logger()

NO_SHOW_TEMPLATE = "no_show_followup"
NO_SHOW_TRIGGER = "no_show"
INVITE_DECLINED_TEMPLATE = "invite_declined_followup"
INVITE_DECLINED_TRIGGER = "invite_declined"

MEETING_NOUNS = {
    BookingType.CALL1: "consultation",
    BookingType.CALL2: "design call",
    BookingType.ONBOARDING: "visit",
}

NOTES_NOUNS = {
    BookingType.CALL1: "discovery call",
    BookingType.CALL2: "design call",
    BookingType.ONBOARDING: "onboarding visit",
}


async def load_parties(store: CRMStore, booking: Booking) -> tuple[Optional[Opportunity], Optional[Lead]]:
    opportunity = await store.get_opportunity(booking.opportunity_id)
    if opportunity is None:
        return None, None
    return opportunity, await store.get_lead(opportunity.lead_id)


def _owner_of(opportunity: Opportunity, lead: Optional[Lead]) -> Optional[str]:
    return opportunity.owner_user_id or (lead.owner_user_id if lead else None)


# ──────────────────────────────────────────────────────────────
#  No-show
# ──────────────────────────────────────────────────────────────

def no_show_message(booking: Booking, lead: Lead, site_url: str) -> tuple[str, str]:
    link = booking_link(site_url, booking.type, booking.opportunity_id, lead)
    noun = MEETING_NOUNS.get(booking.type, "appointment")
    subject_noun = "consultation" if booking.type == BookingType.CALL1 else "call"
    subject = f"We missed you, rebook your {subject_noun}"
    body = (
        f"Hi {first_name(lead.name)},\n\n"
        f"We missed you at your scheduled {noun} today.\n\n"
        f"No worries, you can rebook at a time that suits you:\n{link}\n\n"
        "If you have any questions, just reply to this message.\n\n"
        "Best,\nPaxBespoke"
    )
    return subject, body


async def handle_no_show(
    store: CRMStore, booking: Booking, now: datetime,
    site_url: str, timezone_name: str = "Europe/London",
) -> int:
    """Queue rebooking messages and create the follow-up task. Returns messages queued."""
    opportunity, lead = await load_parties(store, booking)
    if opportunity is None or lead is None:
        logger.info("no_show_context_missing", booking_id=booking.id)
        return 0

    subject, body = no_show_message(booking, lead, site_url)
    queued = 0
    for channel in Channel:
        if not lead.can_receive(channel):
            continue
        inserted = await store.insert_message(QueuedMessage(
            lead_id=lead.id,
            channel=channel,
            template_slug=NO_SHOW_TEMPLATE,
            created_at=now,
            dedup_key=f"{lead.id}:{opportunity.id}:{NO_SHOW_TRIGGER}:{booking.id}:{channel.value}",
            metadata={
                "subject": subject,
                "body": body,
                "auto_triggered": True,
                "trigger_stage": NO_SHOW_TRIGGER,
                "opportunity_id": opportunity.id,
                "booking_id": booking.id,
            },
        ))
        if inserted is not None:
            queued += 1

    await store.create_task(Task(
        opportunity_id=opportunity.id,
        type="follow_up_no_show",
        due_at=now,
        owner_user_id=_owner_of(opportunity, lead),
        description=(
            f"No-show: {lead.name} missed their {booking.type.value} on "
            f"{format_date(booking.scheduled_at, timezone_name)}. Follow-up message sent automatically."
        ),
    ))
    logger.info("no_show_handled", booking_id=booking.id, messages_queued=queued)
    return queued


# ──────────────────────────────────────────────────────────────
#  Cancelled / completed
# ──────────────────────────────────────────────────────────────

async def handle_cancelled(store: CRMStore, booking: Booking, now: datetime):
    opportunity, lead = await load_parties(store, booking)
    if opportunity is None:
        return
    name = lead.name if lead else "Customer"
    await store.create_task(Task(
        opportunity_id=opportunity.id,
        type="reschedule_cancelled",
        due_at=now,
        owner_user_id=_owner_of(opportunity, lead),
        description=f"Cancelled: {name} cancelled their {booking.type.value}. Reach out to reschedule.",
    ))
    logger.info("cancellation_handled", booking_id=booking.id)


async def handle_completed(store: CRMStore, booking: Booking, now: datetime):
    opportunity, lead = await load_parties(store, booking)
    if opportunity is None:
        return
    name = lead.name if lead else "customer"
    noun = NOTES_NOUNS.get(booking.type, "meeting")
    await store.create_task(Task(
        opportunity_id=opportunity.id,
        type="post_call_notes",
        due_at=now + timedelta(hours=1),
        owner_user_id=_owner_of(opportunity, lead),
        description=f"Add notes for your {noun} with {name}. This helps suggest the right next step.",
    ))
    await store.add_action(PostCallAction(
        booking_id=booking.id,
        opportunity_id=opportunity.id,
        action_type=ActionType.REMINDER_SENT,
        reasoning="Meeting completed, prompted owner for post-call notes",
        created_at=now,
    ))
    logger.info("completion_handled", booking_id=booking.id)


# ──────────────────────────────────────────────────────────────
#  Pre-meeting follow-ups
# ──────────────────────────────────────────────────────────────

async def queue_invite_declined_sms(
    store: CRMStore, booking: Booking, opportunity: Opportunity, lead: Lead,
    now: datetime, site_url: str,
) -> bool:
    if not lead.phone:
        return False
    link = booking_link(site_url, booking.type, booking.opportunity_id, lead)
    inserted = await store.insert_message(QueuedMessage(
        lead_id=lead.id,
        channel=Channel.SMS,
        template_slug=INVITE_DECLINED_TEMPLATE,
        created_at=now,
        dedup_key=f"{lead.id}:{opportunity.id}:{INVITE_DECLINED_TRIGGER}:{booking.id}:sms",
        metadata={
            "subject": "Need to reschedule?",
            "body": (
                f"Hi {first_name(lead.name)}, we noticed you might not be able to make your "
                f"upcoming appointment. No worries, pick a new time here: {link}"
            ),
            "auto_triggered": True,
            "trigger_stage": INVITE_DECLINED_TRIGGER,
            "opportunity_id": opportunity.id,
            "booking_id": booking.id,
        },
    ))
    return inserted is not None
