"""
Core data models for the CRM automation engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Stage(str, Enum):
    NEW_ENQUIRY = "new_enquiry"
    CALL1_SCHEDULED = "call1_scheduled"
    QUALIFIED = "qualified"
    CALL2_SCHEDULED = "call2_scheduled"
    PROPOSAL_AGREED = "proposal_agreed"
    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSIT_PAID = "deposit_paid"
    ONBOARDING_SCHEDULED = "onboarding_scheduled"
    ONBOARDING_COMPLETE = "onboarding_complete"
    PRODUCTION = "production"
    INSTALLATION = "installation"
    COMPLETE = "complete"
    LOST = "lost"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class DelayRule(str, Enum):
    IMMEDIATE = "immediate"
    MINUTES_BEFORE_BOOKING = "minutes_before_booking"
    MINUTES_AFTER_STAGE = "minutes_after_stage"
    MINUTES_AFTER_ENQUIRY = "minutes_after_enquiry"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class BookingType(str, Enum):
    CALL1 = "call1"
    CALL2 = "call2"
    ONBOARDING = "onboarding"


class BookingOutcome(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class TrackingStatus(str, Enum):
    PENDING = "pending"
    CHECKED = "checked"


class TaskStatus(str, Enum):
    OPEN = "open"
    DONE = "done"


class ActionType(str, Enum):
    AUTO_MOVE = "auto_move"
    AUTO_NO_SHOW = "auto_no_show"
    REMINDER_SENT = "reminder_sent"
    AI_SUGGESTION = "ai_suggestion"
    OWNER_CONFIRM = "owner_confirm"
    OWNER_OVERRIDE = "owner_override"


class InvoiceStatus(str, Enum):
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"


# Statuses that count as "already represented" when deduplicating enqueues
ACTIVE_MESSAGE_STATUSES = (MessageStatus.QUEUED, MessageStatus.SENDING, MessageStatus.SENT)

# Video calls are tracked from calendar signals; onboarding is an in-person visit
VIDEO_BOOKING_TYPES = (BookingType.CALL1, BookingType.CALL2)


# ──────────────────────────────────────────────────────────────
#  CRM records - leads, opportunities and the people behind them
# ──────────────────────────────────────────────────────────────

class Lead(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    project_type: Optional[str] = None
    owner_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    def can_receive(self, channel: Channel) -> bool:
        """Whether the lead has the contact field this channel needs."""
        if channel == Channel.EMAIL:
            return bool(self.email)
        return bool(self.phone)

    def address_for(self, channel: Channel) -> Optional[str]:
        return self.email if channel == Channel.EMAIL else self.phone


class Owner(BaseModel):
    """A team member who owns opportunities."""
    id: str = Field(default_factory=_new_id)
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class Opportunity(BaseModel):
    id: str = Field(default_factory=_new_id)
    lead_id: str
    stage: Stage = Stage.NEW_ENQUIRY
    value_estimate: Optional[float] = None
    owner_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class StageLogEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    opportunity_id: str
    from_stage: Optional[Stage] = None
    to_stage: Stage
    changed_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Templates and queued messages
# ──────────────────────────────────────────────────────────────

class Template(BaseModel):
    slug: str
    name: str = ""
    channels: list[Channel] = []
    trigger_stage: Optional[Stage] = None
    delay_rule: DelayRule = DelayRule.IMMEDIATE
    delay_minutes: int = 0
    subject: Optional[str] = None
    body: str = ""
    active: bool = True
    sort_order: int = 0


class QueuedMessage(BaseModel):
    """One row of the message log; the unit of scheduled delivery."""
    id: str = Field(default_factory=_new_id)
    lead_id: str
    channel: Channel
    template_slug: str
    status: MessageStatus = MessageStatus.QUEUED
    scheduled_for: Optional[datetime] = None      # None = send on the next pass
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None
    dedup_key: Optional[str] = None
    metadata: dict[str, Any] = {}                 # subject/body/trigger_stage/opportunity_id/...

    @property
    def trigger_stage(self) -> Optional[str]:
        return self.metadata.get("trigger_stage")

    @property
    def opportunity_id(self) -> Optional[str]:
        return self.metadata.get("opportunity_id")

    def is_due(self, now: datetime) -> bool:
        return self.status == MessageStatus.QUEUED and (
            self.scheduled_for is None or self.scheduled_for <= now
        )


# ──────────────────────────────────────────────────────────────
#  Bookings, tasks, invoices and the post-call action log
# ──────────────────────────────────────────────────────────────

class Booking(BaseModel):
    id: str = Field(default_factory=_new_id)
    opportunity_id: str
    type: BookingType
    scheduled_at: datetime
    duration_min: int = 30
    outcome: BookingOutcome = BookingOutcome.PENDING
    tracking_status: TrackingStatus = TrackingStatus.PENDING
    google_event_id: Optional[str] = None
    meet_link: Optional[str] = None
    customer_joined: Optional[bool] = None
    owner_joined: Optional[bool] = None
    attendee_count: Optional[int] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def scheduled_end(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_min)

    @property
    def is_video(self) -> bool:
        return self.type in VIDEO_BOOKING_TYPES


class Task(BaseModel):
    id: str = Field(default_factory=_new_id)
    opportunity_id: str
    type: str
    description: str = ""
    due_at: datetime = Field(default_factory=_utcnow)
    owner_user_id: Optional[str] = None
    status: TaskStatus = TaskStatus.OPEN
    created_at: datetime = Field(default_factory=_utcnow)


class Invoice(BaseModel):
    id: str = Field(default_factory=_new_id)
    opportunity_id: str
    amount: float
    deposit_amount: float
    status: InvoiceStatus = InvoiceStatus.SENT
    checkout_session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class PostCallAction(BaseModel):
    """Append-only audit entry for tracking decisions."""
    id: str = Field(default_factory=_new_id)
    booking_id: str
    opportunity_id: str
    action_type: ActionType
    reasoning: str = ""
    suggested_stage: Optional[Stage] = None
    confidence: Optional[float] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Calendar provider view
# ──────────────────────────────────────────────────────────────

class CalendarAttendee(BaseModel):
    email: str = ""
    response_status: str = "needsAction"        # needsAction | declined | tentative | accepted
    is_self: bool = False
    is_organizer: bool = False


class CalendarEvent(BaseModel):
    id: str
    status: str = "confirmed"                    # confirmed | tentative | cancelled
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    attendees: list[CalendarAttendee] = []

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    sent_via: Optional[str] = None


class TrackingStats(BaseModel):
    checked: int = 0
    updated: int = 0
    errors: int = 0


class AutomationResult(BaseModel):
    opportunity_id: str
    stage: Optional[Stage] = None
    tasks_created: int = 0
    messages_queued: int = 0
    skipped_duplicates: int = 0
    skipped_no_contact: int = 0
    skipped_window: int = 0
    errors: list[str] = []
