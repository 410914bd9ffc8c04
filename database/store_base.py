"""
Abstract CRM Store - Interface for all storage backends.

Implementations:
  - SqlStore       (PostgreSQL or SQLite via SQLAlchemy)
  - InMemoryStore  (dict-based, single-process, no persistence)

The engine keeps no state between invocations; everything it needs to
decide what to do next lives behind this interface.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Booking, BookingType, Invoice, Lead, Opportunity, Owner, PostCallAction,
    QueuedMessage, Stage, StageLogEntry, Task, Template,
)


class StoreError(Exception):
    """Raised when the store cannot complete an operation."""


class CRMStore(ABC):
    """Interface that all CRM store backends must implement."""

    # ── Leads, owners, opportunities ──────────────────────────

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def upsert_lead(self, lead: Lead) -> Lead:
        ...

    @abstractmethod
    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        ...

    @abstractmethod
    async def upsert_owner(self, owner: Owner) -> Owner:
        ...

    @abstractmethod
    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        ...

    @abstractmethod
    async def upsert_opportunity(self, opportunity: Opportunity) -> Opportunity:
        ...

    @abstractmethod
    async def set_opportunity_stage(self, opportunity_id: str, stage: Stage) -> Optional[Stage]:
        """Write the new stage; return the previous one (None if not found)."""
        ...

    @abstractmethod
    async def add_stage_log(self, entry: StageLogEntry) -> None:
        ...

    # ── Templates ─────────────────────────────────────────────

    @abstractmethod
    async def get_template(self, slug: str) -> Optional[Template]:
        ...

    @abstractmethod
    async def list_templates(self, stage: Optional[Stage] = None) -> list[Template]:
        """Active templates, optionally for one trigger stage, by sort_order."""
        ...

    @abstractmethod
    async def upsert_template(self, template: Template) -> Template:
        ...

    # ── Message log ───────────────────────────────────────────

    @abstractmethod
    async def insert_message(self, message: QueuedMessage) -> Optional[QueuedMessage]:
        """Insert a queued message. Returns None when dedup_key already exists."""
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[QueuedMessage]:
        ...

    @abstractmethod
    async def list_messages(self, lead_id: Optional[str] = None) -> list[QueuedMessage]:
        ...

    @abstractmethod
    async def active_message_keys(
        self, lead_id: str, trigger_stage: str, opportunity_id: str,
    ) -> set[str]:
        """"slug:channel" for queued/sending/sent rows of this lead+stage+opportunity."""
        ...

    @abstractmethod
    async def claim_due_messages(self, now: datetime, limit: int) -> list[QueuedMessage]:
        """Move up to `limit` due rows queued → sending and return the ones won."""
        ...

    @abstractmethod
    async def release_message(self, message_id: str) -> None:
        """Return a claimed row to queued."""
        ...

    @abstractmethod
    async def finish_message(
        self, message_id: str, status: str,
        sent_at: Optional[datetime], metadata: dict[str, Any],
    ) -> None:
        """Record a terminal status and merge metadata into the row."""
        ...

    @abstractmethod
    async def queue_depth(self, now: datetime) -> dict[str, int]:
        ...

    # ── Bookings ──────────────────────────────────────────────

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        ...

    @abstractmethod
    async def upsert_booking(self, booking: Booking) -> Booking:
        ...

    @abstractmethod
    async def update_booking(self, booking_id: str, **fields) -> None:
        ...

    @abstractmethod
    async def latest_booking(self, opportunity_id: str, booking_type: BookingType) -> Optional[Booking]:
        """Most recently created booking of this type, whatever its outcome."""

    @abstractmethod
    async def bookings_due_for_tracking(self, now: datetime, grace_minutes: int, limit: int) -> list[Booking]:
        """Pending, untracked, event-linked bookings whose end + grace has passed, oldest first."""
        ...

    @abstractmethod
    async def upcoming_bookings(self, start: datetime, end: datetime, limit: int) -> list[Booking]:
        """Pending bookings scheduled within [start, end], soonest first."""
        ...

    # ── Tasks, invoices, action log ───────────────────────────

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    async def list_tasks(self, opportunity_id: str) -> list[Task]:
        ...

    @abstractmethod
    async def get_invoice_for_opportunity(self, opportunity_id: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def create_invoice(self, invoice: Invoice) -> Invoice:
        ...

    @abstractmethod
    async def update_invoice(self, invoice_id: str, **fields) -> None:
        ...

    @abstractmethod
    async def add_action(self, action: PostCallAction) -> PostCallAction:
        ...

    @abstractmethod
    async def list_actions(self, booking_id: str) -> list[PostCallAction]:
        ...

    async def has_action_like(self, booking_id: str, fragment: str) -> bool:
        """Case-insensitive search of the booking's action reasoning."""
        fragment = fragment.lower()
        return any(fragment in (a.reasoning or "").lower() for a in await self.list_actions(booking_id))
