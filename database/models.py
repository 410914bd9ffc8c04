"""
CRM tables as SQLAlchemy ORM models, shared by PostgreSQL and SQLite.

  - Free-form fields use the generic JSON type (TEXT on SQLite).
  - Message-log fields the queue filters on (trigger_stage, opportunity_id)
    are promoted out of the metadata JSON into real columns.
  - message_logs.dedup_key is UNIQUE and nullable: failed rows clear it so a
    later stage run may queue the same template again.
  - String uuid primary keys.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Leads, profiles, opportunities
# ──────────────────────────────────────────────────────────────

class LeadRow(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    project_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProfileRow(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    full_name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class OpportunityRow(Base):
    __tablename__ = "opportunities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(String(64), ForeignKey("leads.id"), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), default="new_enquiry")
    value_estimate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_opportunities_lead", "lead_id"),
        Index("ix_opportunities_stage", "stage"),
    )


class StageLogRow(Base):
    __tablename__ = "stage_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    opportunity_id: Mapped[str] = mapped_column(String(64), ForeignKey("opportunities.id"), nullable=False)
    from_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_stage_log_opportunity", "opportunity_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Templates and the message log
# ──────────────────────────────────────────────────────────────

class MessageTemplateRow(Base):
    __tablename__ = "message_templates"

    slug: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    channels: Mapped[Any] = mapped_column(JSON, default=list)
    trigger_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    delay_rule: Mapped[str] = mapped_column(String(32), default="immediate")
    delay_minutes: Mapped[int] = mapped_column(Integer, default=0)
    subject: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    body: Mapped[str] = mapped_column(Text, default="")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_message_templates_stage", "trigger_stage", "sort_order"),
    )


class MessageLogRow(Base):
    __tablename__ = "message_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(String(64), ForeignKey("leads.id"), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    template_slug: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="queued")
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    opportunity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    trigger_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    dedup_key: Mapped[Optional[str]] = mapped_column(String(512), unique=True, nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_message_logs_status_sched", "status", "scheduled_for"),
        Index("ix_message_logs_dedup_scope", "lead_id", "trigger_stage", "opportunity_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Bookings and the post-call action log
# ──────────────────────────────────────────────────────────────

class BookingRow(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    opportunity_id: Mapped[str] = mapped_column(String(64), ForeignKey("opportunities.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, default=30)
    outcome: Mapped[str] = mapped_column(String(16), default="pending")
    tracking_status: Mapped[str] = mapped_column(String(16), default="pending")
    google_event_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    meet_link: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    customer_joined: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    owner_joined: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    attendee_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bookings_tracking", "outcome", "tracking_status", "scheduled_at"),
        Index("ix_bookings_opportunity_type", "opportunity_id", "type"),
    )


class PostCallActionRow(Base):
    __tablename__ = "post_call_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    booking_id: Mapped[str] = mapped_column(String(64), ForeignKey("bookings.id"), nullable=False)
    opportunity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    suggested_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_post_call_actions_booking", "booking_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Tasks and invoices
# ──────────────────────────────────────────────────────────────

class TaskRow(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    opportunity_id: Mapped[str] = mapped_column(String(64), ForeignKey("opportunities.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_tasks_opportunity", "opportunity_id"),
    )


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    opportunity_id: Mapped[str] = mapped_column(String(64), ForeignKey("opportunities.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    deposit_amount: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(16), default="sent")
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_invoices_opportunity", "opportunity_id"),
    )
