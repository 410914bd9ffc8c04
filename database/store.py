"""
SqlStore - Portable SQL queries for PostgreSQL and SQLite.

Portability notes:
  - Datetime arithmetic on columns is not portable, so "end + grace has
    passed" is narrowed in SQL by start time and finished in Python.
  - SQLite hands back naive datetimes for timezone-aware columns; every row
    read is normalised to UTC before it leaves this module.
  - The claim step is a per-row conditional UPDATE (status = 'queued'), so
    two concurrent passes can never both win the same message.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError

from database.models import (
    LeadRow, ProfileRow, OpportunityRow, StageLogRow, MessageTemplateRow,
    MessageLogRow, BookingRow, PostCallActionRow, TaskRow, InvoiceRow,
)
from database.session import get_session
from database.store_base import CRMStore
from models.schemas import (
    ACTIVE_MESSAGE_STATUSES, Booking, BookingType, Invoice, Lead, MessageStatus,
    Opportunity, Owner, PostCallAction, QueuedMessage, Stage, StageLogEntry,
    Task, Template,
)

logger = structlog.get_logger()


def _aware(value: Any) -> Any:
    """Treat naive datetimes coming back from the driver as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def _plain(value: Any) -> Any:
    """Flatten enums and normalise datetimes for binding."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _aware(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _to_model(model_cls, row, **overrides):
    data = {
        name: _aware(getattr(row, name))
        for name in model_cls.model_fields
        if name not in overrides and name != "metadata" and hasattr(row, name)
    }
    data.update(overrides)
    return model_cls(**data)


def _columns(model, **overrides) -> dict[str, Any]:
    data = {k: _plain(v) for k, v in model.model_dump().items()}
    data.update(overrides)
    return data


class SqlStore(CRMStore):
    """
    CRM store on SQLAlchemy async sessions (PostgreSQL or SQLite).
    """

    # ── Leads, owners, opportunities ───────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with get_session() as db:
            row = await db.get(LeadRow, lead_id)
            return _to_model(Lead, row) if row else None

    async def upsert_lead(self, lead: Lead) -> Lead:
        async with get_session() as db:
            await db.merge(LeadRow(**_columns(lead)))
        return lead

    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        async with get_session() as db:
            row = await db.get(ProfileRow, owner_id)
            return _to_model(Owner, row) if row else None

    async def upsert_owner(self, owner: Owner) -> Owner:
        async with get_session() as db:
            await db.merge(ProfileRow(**_columns(owner)))
        return owner

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        async with get_session() as db:
            row = await db.get(OpportunityRow, opportunity_id)
            return _to_model(Opportunity, row) if row else None

    async def upsert_opportunity(self, opportunity: Opportunity) -> Opportunity:
        async with get_session() as db:
            await db.merge(OpportunityRow(**_columns(opportunity)))
        return opportunity

    async def set_opportunity_stage(self, opportunity_id: str, stage: Stage) -> Optional[Stage]:
        async with get_session() as db:
            row = await db.get(OpportunityRow, opportunity_id)
            if not row:
                return None
            previous = Stage(row.stage)
            row.stage = stage.value
            return previous

    async def add_stage_log(self, entry: StageLogEntry) -> None:
        async with get_session() as db:
            db.add(StageLogRow(**_columns(entry)))

    # ── Templates ──────────────────────────────────────────

    async def get_template(self, slug: str) -> Optional[Template]:
        async with get_session() as db:
            row = await db.get(MessageTemplateRow, slug)
            return _to_model(Template, row) if row else None

    async def list_templates(self, stage: Optional[Stage] = None) -> list[Template]:
        async with get_session() as db:
            stmt = select(MessageTemplateRow).where(MessageTemplateRow.active.is_(True))
            if stage is not None:
                stmt = stmt.where(MessageTemplateRow.trigger_stage == stage.value)
            stmt = stmt.order_by(MessageTemplateRow.sort_order, MessageTemplateRow.slug)
            result = await db.execute(stmt)
            return [_to_model(Template, r) for r in result.scalars()]

    async def upsert_template(self, template: Template) -> Template:
        async with get_session() as db:
            await db.merge(MessageTemplateRow(**_columns(template)))
        return template

    # ── Message log ────────────────────────────────────────

    @staticmethod
    def _row_to_message(row: MessageLogRow) -> QueuedMessage:
        return _to_model(QueuedMessage, row, metadata=dict(row.metadata_ or {}))

    async def insert_message(self, message: QueuedMessage) -> Optional[QueuedMessage]:
        cols = _columns(message)
        metadata = cols.pop("metadata")
        row = MessageLogRow(
            **cols,
            metadata_=metadata,
            opportunity_id=message.opportunity_id,
            trigger_stage=message.trigger_stage,
        )
        try:
            async with get_session() as db:
                db.add(row)
        except IntegrityError:
            logger.info("message_duplicate_skipped", dedup_key=message.dedup_key)
            return None
        return message

    async def get_message(self, message_id: str) -> Optional[QueuedMessage]:
        async with get_session() as db:
            row = await db.get(MessageLogRow, message_id)
            return self._row_to_message(row) if row else None

    async def list_messages(self, lead_id: Optional[str] = None) -> list[QueuedMessage]:
        async with get_session() as db:
            stmt = select(MessageLogRow)
            if lead_id:
                stmt = stmt.where(MessageLogRow.lead_id == lead_id)
            result = await db.execute(stmt.order_by(MessageLogRow.created_at))
            return [self._row_to_message(r) for r in result.scalars()]

    async def active_message_keys(
        self, lead_id: str, trigger_stage: str, opportunity_id: str,
    ) -> set[str]:
        async with get_session() as db:
            stmt = select(MessageLogRow.template_slug, MessageLogRow.channel).where(
                MessageLogRow.lead_id == lead_id,
                MessageLogRow.trigger_stage == trigger_stage,
                MessageLogRow.opportunity_id == opportunity_id,
                MessageLogRow.status.in_([s.value for s in ACTIVE_MESSAGE_STATUSES]),
            )
            result = await db.execute(stmt)
            return {f"{slug}:{channel}" for slug, channel in result.all()}

    async def claim_due_messages(self, now: datetime, limit: int) -> list[QueuedMessage]:
        now = _aware(now)
        async with get_session() as db:
            stmt = (
                select(MessageLogRow.id)
                .where(
                    MessageLogRow.status == MessageStatus.QUEUED.value,
                    (MessageLogRow.scheduled_for.is_(None)) | (MessageLogRow.scheduled_for <= now),
                )
                .order_by(
                    case((MessageLogRow.scheduled_for.is_(None), 0), else_=1),
                    MessageLogRow.scheduled_for,
                    MessageLogRow.created_at,
                )
                .limit(limit)
            )
            candidate_ids = list((await db.execute(stmt)).scalars())

            won: list[str] = []
            for message_id in candidate_ids:
                result = await db.execute(
                    update(MessageLogRow)
                    .where(
                        MessageLogRow.id == message_id,
                        MessageLogRow.status == MessageStatus.QUEUED.value,
                    )
                    .values(status=MessageStatus.SENDING.value)
                )
                if result.rowcount == 1:
                    won.append(message_id)

            if not won:
                return []
            rows = await db.execute(select(MessageLogRow).where(MessageLogRow.id.in_(won)))
            by_id = {r.id: self._row_to_message(r) for r in rows.scalars()}

        if len(won) < len(candidate_ids):
            logger.info("messages_claimed_elsewhere", lost=len(candidate_ids) - len(won))
        return [by_id[i] for i in won if i in by_id]

    async def release_message(self, message_id: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(MessageLogRow)
                .where(
                    MessageLogRow.id == message_id,
                    MessageLogRow.status == MessageStatus.SENDING.value,
                )
                .values(status=MessageStatus.QUEUED.value)
            )

    async def finish_message(
        self, message_id: str, status: str,
        sent_at: Optional[datetime], metadata: dict[str, Any],
    ) -> None:
        status = _plain(status)
        async with get_session() as db:
            row = await db.get(MessageLogRow, message_id)
            if not row:
                return
            row.status = status
            row.sent_at = _aware(sent_at)
            row.metadata_ = {**(row.metadata_ or {}), **metadata}
            if status == MessageStatus.FAILED.value:
                row.dedup_key = None

    async def queue_depth(self, now: datetime) -> dict[str, int]:
        now = _aware(now)
        async with get_session() as db:
            counts = dict((await db.execute(
                select(MessageLogRow.status, func.count()).group_by(MessageLogRow.status)
            )).all())
            ready = (await db.execute(
                select(func.count()).select_from(MessageLogRow).where(
                    MessageLogRow.status == MessageStatus.QUEUED.value,
                    (MessageLogRow.scheduled_for.is_(None)) | (MessageLogRow.scheduled_for <= now),
                )
            )).scalar_one()
        total = counts.get(MessageStatus.QUEUED.value, 0)
        return {
            "ready_to_send": ready,
            "scheduled": total - ready,
            "total_queued": total,
            "stuck_sending": counts.get(MessageStatus.SENDING.value, 0),
        }

    # ── Bookings ───────────────────────────────────────────

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        async with get_session() as db:
            row = await db.get(BookingRow, booking_id)
            return _to_model(Booking, row) if row else None

    async def upsert_booking(self, booking: Booking) -> Booking:
        async with get_session() as db:
            await db.merge(BookingRow(**_columns(booking)))
        return booking

    async def update_booking(self, booking_id: str, **fields) -> None:
        if not fields:
            return
        async with get_session() as db:
            await db.execute(
                update(BookingRow)
                .where(BookingRow.id == booking_id)
                .values(**{k: _plain(v) for k, v in fields.items()})
            )

    async def latest_booking(self, opportunity_id: str, booking_type: BookingType) -> Optional[Booking]:
        async with get_session() as db:
            stmt = (
                select(BookingRow)
                .where(BookingRow.opportunity_id == opportunity_id, BookingRow.type == booking_type.value)
                .order_by(BookingRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_model(Booking, row) if row else None

    async def bookings_due_for_tracking(self, now: datetime, grace_minutes: int, limit: int) -> list[Booking]:
        now = _aware(now)
        grace = timedelta(minutes=grace_minutes)
        async with get_session() as db:
            stmt = (
                select(BookingRow)
                .where(
                    BookingRow.outcome == "pending",
                    BookingRow.tracking_status == "pending",
                    BookingRow.google_event_id.is_not(None),
                    BookingRow.scheduled_at <= now - grace,
                )
                .order_by(BookingRow.scheduled_at)
            )
            result = await db.execute(stmt)
            due = []
            for row in result.scalars():
                booking = _to_model(Booking, row)
                if booking.scheduled_end + grace <= now:
                    due.append(booking)
                    if len(due) >= limit:
                        break
            return due

    async def upcoming_bookings(self, start: datetime, end: datetime, limit: int) -> list[Booking]:
        async with get_session() as db:
            stmt = (
                select(BookingRow)
                .where(
                    BookingRow.outcome == "pending",
                    BookingRow.scheduled_at >= _aware(start),
                    BookingRow.scheduled_at <= _aware(end),
                )
                .order_by(BookingRow.scheduled_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [_to_model(Booking, r) for r in result.scalars()]

    # ── Tasks, invoices, action log ────────────────────────

    async def create_task(self, task: Task) -> Task:
        async with get_session() as db:
            db.add(TaskRow(**_columns(task)))
        return task

    async def list_tasks(self, opportunity_id: str) -> list[Task]:
        async with get_session() as db:
            stmt = select(TaskRow).where(TaskRow.opportunity_id == opportunity_id).order_by(TaskRow.created_at)
            result = await db.execute(stmt)
            return [_to_model(Task, r) for r in result.scalars()]

    async def get_invoice_for_opportunity(self, opportunity_id: str) -> Optional[Invoice]:
        async with get_session() as db:
            stmt = (
                select(InvoiceRow)
                .where(InvoiceRow.opportunity_id == opportunity_id)
                .order_by(InvoiceRow.created_at)
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_model(Invoice, row) if row else None

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        async with get_session() as db:
            db.add(InvoiceRow(**_columns(invoice)))
        return invoice

    async def update_invoice(self, invoice_id: str, **fields) -> None:
        if not fields:
            return
        async with get_session() as db:
            await db.execute(
                update(InvoiceRow)
                .where(InvoiceRow.id == invoice_id)
                .values(**{k: _plain(v) for k, v in fields.items()})
            )

    async def add_action(self, action: PostCallAction) -> PostCallAction:
        async with get_session() as db:
            db.add(PostCallActionRow(**_columns(action)))
        return action

    async def list_actions(self, booking_id: str) -> list[PostCallAction]:
        async with get_session() as db:
            stmt = (
                select(PostCallActionRow)
                .where(PostCallActionRow.booking_id == booking_id)
                .order_by(PostCallActionRow.created_at)
            )
            result = await db.execute(stmt)
            return [_to_model(PostCallAction, r) for r in result.scalars()]

    async def has_action_like(self, booking_id: str, fragment: str) -> bool:
        async with get_session() as db:
            stmt = (
                select(func.count())
                .select_from(PostCallActionRow)
                .where(
                    PostCallActionRow.booking_id == booking_id,
                    PostCallActionRow.reasoning.ilike(f"%{fragment}%"),
                )
            )
            return (await db.execute(stmt)).scalar_one() > 0
