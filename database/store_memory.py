"""
InMemoryStore - Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Safe under a single event loop: no method awaits between read and write,
    so the queued → sending claim is atomic
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from database.store_base import CRMStore
from models.schemas import (
    ACTIVE_MESSAGE_STATUSES, Booking, BookingOutcome, BookingType, Invoice, Lead,
    MessageStatus, Opportunity, Owner, PostCallAction, QueuedMessage, Stage,
    StageLogEntry, Task, Template, TrackingStatus, _utcnow,
)

logger = structlog.get_logger()


class InMemoryStore(CRMStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Records are stored as pydantic copies so callers never alias internal state.
    """

    def __init__(self):
        self._leads: dict[str, Lead] = {}
        self._owners: dict[str, Owner] = {}
        self._opportunities: dict[str, Opportunity] = {}
        self._stage_log: list[StageLogEntry] = []
        self._templates: dict[str, Template] = {}
        self._messages: dict[str, QueuedMessage] = {}
        self._bookings: dict[str, Booking] = {}
        self._tasks: dict[str, Task] = {}
        self._invoices: dict[str, Invoice] = {}
        self._actions: list[PostCallAction] = []

        # Indexes
        self._dedup_index: dict[str, str] = {}          # dedup_key → message_id
        logger.info("inmemory_store_initialized")

    # ── Leads, owners, opportunities ──────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def upsert_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = lead.model_copy(deep=True)
        return lead

    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        owner = self._owners.get(owner_id)
        return owner.model_copy(deep=True) if owner else None

    async def upsert_owner(self, owner: Owner) -> Owner:
        self._owners[owner.id] = owner.model_copy(deep=True)
        return owner

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        opp = self._opportunities.get(opportunity_id)
        return opp.model_copy(deep=True) if opp else None

    async def upsert_opportunity(self, opportunity: Opportunity) -> Opportunity:
        self._opportunities[opportunity.id] = opportunity.model_copy(deep=True)
        return opportunity

    async def set_opportunity_stage(self, opportunity_id: str, stage: Stage) -> Optional[Stage]:
        opp = self._opportunities.get(opportunity_id)
        if not opp:
            return None
        previous = opp.stage
        opp.stage = stage
        opp.updated_at = _utcnow()
        return previous

    async def add_stage_log(self, entry: StageLogEntry) -> None:
        self._stage_log.append(entry.model_copy(deep=True))

    # ── Templates ─────────────────────────────────────────

    async def get_template(self, slug: str) -> Optional[Template]:
        tpl = self._templates.get(slug)
        return tpl.model_copy(deep=True) if tpl else None

    async def list_templates(self, stage: Optional[Stage] = None) -> list[Template]:
        templates = [
            t for t in self._templates.values()
            if t.active and (stage is None or t.trigger_stage == stage)
        ]
        templates.sort(key=lambda t: t.sort_order)
        return [t.model_copy(deep=True) for t in templates]

    async def upsert_template(self, template: Template) -> Template:
        self._templates[template.slug] = template.model_copy(deep=True)
        return template

    # ── Message log ───────────────────────────────────────

    async def insert_message(self, message: QueuedMessage) -> Optional[QueuedMessage]:
        if message.dedup_key and message.dedup_key in self._dedup_index:
            logger.info("message_duplicate_skipped", dedup_key=message.dedup_key)
            return None
        self._messages[message.id] = message.model_copy(deep=True)
        if message.dedup_key:
            self._dedup_index[message.dedup_key] = message.id
        return message

    async def get_message(self, message_id: str) -> Optional[QueuedMessage]:
        msg = self._messages.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def list_messages(self, lead_id: Optional[str] = None) -> list[QueuedMessage]:
        msgs = [m for m in self._messages.values() if lead_id is None or m.lead_id == lead_id]
        msgs.sort(key=lambda m: m.created_at)
        return [m.model_copy(deep=True) for m in msgs]

    async def active_message_keys(
        self, lead_id: str, trigger_stage: str, opportunity_id: str,
    ) -> set[str]:
        return {
            f"{m.template_slug}:{m.channel.value}"
            for m in self._messages.values()
            if m.lead_id == lead_id
            and m.status in ACTIVE_MESSAGE_STATUSES
            and m.trigger_stage == trigger_stage
            and m.opportunity_id == opportunity_id
        }

    async def claim_due_messages(self, now: datetime, limit: int) -> list[QueuedMessage]:
        due = [m for m in self._messages.values() if m.is_due(now)]
        # Unscheduled rows first, then oldest scheduled
        due.sort(key=lambda m: (m.scheduled_for is not None, m.scheduled_for or m.created_at, m.created_at))
        claimed = []
        for msg in due[:limit]:
            msg.status = MessageStatus.SENDING
            claimed.append(msg.model_copy(deep=True))
        return claimed

    async def release_message(self, message_id: str) -> None:
        msg = self._messages.get(message_id)
        if msg and msg.status == MessageStatus.SENDING:
            msg.status = MessageStatus.QUEUED

    async def finish_message(
        self, message_id: str, status: str,
        sent_at: Optional[datetime], metadata: dict[str, Any],
    ) -> None:
        msg = self._messages.get(message_id)
        if not msg:
            return
        msg.status = MessageStatus(status)
        msg.sent_at = sent_at
        msg.metadata = {**msg.metadata, **metadata}
        if msg.status == MessageStatus.FAILED and msg.dedup_key:
            self._dedup_index.pop(msg.dedup_key, None)
            msg.dedup_key = None

    async def queue_depth(self, now: datetime) -> dict[str, int]:
        queued = [m for m in self._messages.values() if m.status == MessageStatus.QUEUED]
        ready = sum(1 for m in queued if m.is_due(now))
        return {
            "ready_to_send": ready,
            "scheduled": len(queued) - ready,
            "total_queued": len(queued),
            "stuck_sending": sum(1 for m in self._messages.values() if m.status == MessageStatus.SENDING),
        }

    # ── Bookings ──────────────────────────────────────────

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def upsert_booking(self, booking: Booking) -> Booking:
        self._bookings[booking.id] = booking.model_copy(deep=True)
        return booking

    async def update_booking(self, booking_id: str, **fields) -> None:
        booking = self._bookings.get(booking_id)
        if not booking:
            return
        self._bookings[booking_id] = booking.model_copy(update=fields)

    async def latest_booking(self, opportunity_id: str, booking_type: BookingType) -> Optional[Booking]:
        matches = [
            b for b in self._bookings.values()
            if b.opportunity_id == opportunity_id and b.type == booking_type
        ]
        if not matches:
            return None
        return max(matches, key=lambda b: b.created_at).model_copy(deep=True)

    async def bookings_due_for_tracking(self, now: datetime, grace_minutes: int, limit: int) -> list[Booking]:
        grace = timedelta(minutes=grace_minutes)
        due = [
            b for b in self._bookings.values()
            if b.outcome == BookingOutcome.PENDING
            and b.tracking_status == TrackingStatus.PENDING
            and b.google_event_id
            and b.scheduled_end + grace <= now
        ]
        due.sort(key=lambda b: b.scheduled_at)
        return [b.model_copy(deep=True) for b in due[:limit]]

    async def upcoming_bookings(self, start: datetime, end: datetime, limit: int) -> list[Booking]:
        upcoming = [
            b for b in self._bookings.values()
            if b.outcome == BookingOutcome.PENDING and start <= b.scheduled_at <= end
        ]
        upcoming.sort(key=lambda b: b.scheduled_at)
        return [b.model_copy(deep=True) for b in upcoming[:limit]]

    # ── Tasks, invoices, action log ───────────────────────

    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def list_tasks(self, opportunity_id: str) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.opportunity_id == opportunity_id]
        tasks.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in tasks]

    async def get_invoice_for_opportunity(self, opportunity_id: str) -> Optional[Invoice]:
        for inv in self._invoices.values():
            if inv.opportunity_id == opportunity_id:
                return inv.model_copy(deep=True)
        return None

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        self._invoices[invoice.id] = invoice.model_copy(deep=True)
        return invoice

    async def update_invoice(self, invoice_id: str, **fields) -> None:
        inv = self._invoices.get(invoice_id)
        if inv:
            self._invoices[invoice_id] = inv.model_copy(update=fields)

    async def add_action(self, action: PostCallAction) -> PostCallAction:
        self._actions.append(action.model_copy(deep=True))
        return action

    async def list_actions(self, booking_id: str) -> list[PostCallAction]:
        return [a.model_copy(deep=True) for a in self._actions if a.booking_id == booking_id]
