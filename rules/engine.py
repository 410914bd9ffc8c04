"""
Automation Engine - turns a stage change into tasks and queued messages.

For every stage entry:
  1. load opportunity → lead → owner (missing context aborts silently)
  2. create the stage's fixed task, if it has one
  3. recover booking time / meet link for "*_scheduled" stages
  4. resolve variables (awaiting_deposit also gets an invoice + checkout link)
  5. for each active stage template × channel: schedule, dedup, gate, enqueue

Nothing here sends anything; the queue processor owns delivery.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Optional

from backend.payments import PaymentProvider
from config.settings import EngineConfig
from database.store_base import CRMStore
from models.schemas import (
    AutomationResult, Booking, Invoice, Lead, Opportunity, QueuedMessage, Stage,
    Task, Template,
)
from rules.delays import compute_scheduled_for
from templates.registry import TemplateStore
from templates.variables import (
    SCHEDULED_BOOKING_TYPE, VariableContext, resolve_variables,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Fixed per-stage tasks
# ──────────────────────────────────────────────────────────────

STAGE_TASKS: dict[Stage, tuple[str, str]] = {
    Stage.NEW_ENQUIRY: ("call1_attempt", "First call attempt for {name}"),
    Stage.QUALIFIED: ("schedule_call2", "Schedule Call 2 with {name}"),
    Stage.DEPOSIT_PAID: ("schedule_onboarding", "Schedule onboarding for {name}"),
}


def dedup_key(lead_id: str, opportunity_id: str, stage: Stage, slug: str, channel: str) -> str:
    return f"{lead_id}:{opportunity_id}:{stage.value}:{slug}:{channel}"


# ──────────────────────────────────────────────────────────────
#  Automation Engine
# ──────────────────────────────────────────────────────────────

class AutomationEngine:
    """
    Runs stage automations. Never raises: every failure is logged and
    reported on the returned AutomationResult.
    """

    def __init__(
        self,
        store: CRMStore,
        templates: TemplateStore,
        config: EngineConfig,
        timezone_name: str = "Europe/London",
        payments: Optional[PaymentProvider] = None,
    ):
        self.store = store
        self.templates = templates
        self.config = config
        self.timezone_name = timezone_name
        self.payments = payments

    async def run_stage_automations(
        self,
        opportunity_id: str,
        new_stage: Stage,
        booking_time: Optional[datetime] = None,
        meet_link: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AutomationResult:
        now = now or datetime.now(timezone.utc)
        result = AutomationResult(opportunity_id=opportunity_id, stage=new_stage)

        try:
            opportunity = await self.store.get_opportunity(opportunity_id)
            lead = await self.store.get_lead(opportunity.lead_id) if opportunity else None
        except Exception as e:
            logger.error("automation_context_load_failed", opportunity_id=opportunity_id, error=str(e))
            result.errors.append(str(e))
            return result

        if not opportunity or not lead:
            logger.info("automation_context_missing", opportunity_id=opportunity_id,
                        stage=new_stage.value, has_opportunity=bool(opportunity))
            return result

        owner_id = opportunity.owner_user_id or lead.owner_user_id
        owner = None
        if owner_id:
            try:
                owner = await self.store.get_owner(owner_id)
            except Exception as e:
                logger.warning("automation_owner_load_failed", owner_id=owner_id, error=str(e))

        # ── Fixed task ──
        task_def = STAGE_TASKS.get(new_stage)
        if task_def:
            task_type, description = task_def
            try:
                await self.store.create_task(Task(
                    opportunity_id=opportunity.id,
                    type=task_type,
                    description=description.format(name=lead.name),
                    due_at=now,
                    owner_user_id=owner_id,
                ))
                result.tasks_created += 1
            except Exception as e:
                logger.error("automation_task_failed", opportunity_id=opportunity.id,
                             task_type=task_type, error=str(e))
                result.errors.append(str(e))

        # ── Booking context ──
        # Caller-supplied values are pinned on the queued rows so a later
        # refresh cannot replace them with a stored booking's.
        pinned: list[str] = []
        if booking_time is not None:
            pinned += ["date", "time"]
        if meet_link is not None:
            pinned.append("meet_link")
        booking: Optional[Booking] = None
        booking_type = SCHEDULED_BOOKING_TYPE.get(new_stage)
        if booking_type and booking_time is None:
            try:
                booking = await self.store.latest_booking(opportunity.id, booking_type)
            except Exception as e:
                logger.warning("automation_booking_lookup_failed", opportunity_id=opportunity.id, error=str(e))
            if booking:
                booking_time = booking.scheduled_at
                meet_link = meet_link or booking.meet_link

        # ── Variables ──
        invoice: Optional[Invoice] = None
        payment_link: Optional[str] = None
        if new_stage == Stage.AWAITING_DEPOSIT:
            invoice, payment_link = await self._ensure_invoice_link(opportunity, lead)

        variables = resolve_variables(VariableContext(
            lead=lead,
            opportunity=opportunity,
            stage=new_stage,
            owner=owner,
            booking=booking,
            invoice=invoice,
            booking_time=booking_time,
            meet_link=meet_link,
            payment_link=payment_link,
            site_url=self.config.site_url,
            timezone=self.timezone_name,
            deposit_ratio=self.config.deposit_ratio,
        ))

        # ── Templates ──
        try:
            templates = await self.templates.for_stage(new_stage)
            existing = await self.store.active_message_keys(lead.id, new_stage.value, opportunity.id)
        except Exception as e:
            logger.error("automation_template_load_failed", opportunity_id=opportunity.id, error=str(e))
            result.errors.append(str(e))
            return result

        for template in templates:
            try:
                await self._enqueue_template(
                    template, lead, opportunity, new_stage, variables,
                    existing, booking_time, booking, now, result, pinned,
                )
            except Exception as e:
                logger.error("automation_template_error", slug=template.slug,
                             opportunity_id=opportunity.id, error=str(e))
                result.errors.append(f"{template.slug}: {e}")

        logger.info("stage_automations_complete",
                    opportunity_id=opportunity.id,
                    stage=new_stage.value,
                    tasks=result.tasks_created,
                    queued=result.messages_queued,
                    duplicates=result.skipped_duplicates,
                    no_contact=result.skipped_no_contact,
                    window_passed=result.skipped_window)
        return result

    async def _enqueue_template(
        self,
        template: Template,
        lead: Lead,
        opportunity: Opportunity,
        stage: Stage,
        variables: dict[str, str],
        existing: set[str],
        booking_time: Optional[datetime],
        booking: Optional[Booking],
        now: datetime,
        result: AutomationResult,
        pinned: Optional[list[str]] = None,
    ):
        decision = compute_scheduled_for(template.delay_rule, template.delay_minutes, now, booking_time)
        if decision.skip:
            logger.info("template_skipped", slug=template.slug, reason=decision.reason)
            result.skipped_window += 1
            return

        for channel in template.channels:
            key = f"{template.slug}:{channel.value}"
            if key in existing:
                result.skipped_duplicates += 1
                continue
            if not lead.can_receive(channel):
                result.skipped_no_contact += 1
                continue

            metadata = {
                "subject": template.subject,
                "body": template.body,
                "trigger_stage": stage.value,
                "opportunity_id": opportunity.id,
                "auto_triggered": True,
                "variables": dict(variables),
            }
            if booking:
                metadata["booking_id"] = booking.id
            if pinned:
                metadata["pinned_variables"] = list(pinned)

            inserted = await self.store.insert_message(QueuedMessage(
                lead_id=lead.id,
                channel=channel,
                template_slug=template.slug,
                scheduled_for=decision.scheduled_for,
                created_at=now,
                dedup_key=dedup_key(lead.id, opportunity.id, stage, template.slug, channel.value),
                metadata=metadata,
            ))
            if inserted is None:
                result.skipped_duplicates += 1
                continue
            existing.add(key)
            result.messages_queued += 1

    # ── Deposit invoice ───────────────────────────────────────

    async def _ensure_invoice_link(
        self, opportunity: Opportunity, lead: Lead,
    ) -> tuple[Optional[Invoice], str]:
        """Get or create the deposit invoice and a checkout URL (or the placeholder)."""
        placeholder = self.config.payment_link_placeholder
        try:
            invoice = await self.store.get_invoice_for_opportunity(opportunity.id)
            if invoice is None:
                if not opportunity.value_estimate or opportunity.value_estimate <= 0:
                    logger.info("invoice_skipped_no_value", opportunity_id=opportunity.id)
                    return None, placeholder
                invoice = await self.store.create_invoice(Invoice(
                    opportunity_id=opportunity.id,
                    amount=opportunity.value_estimate,
                    deposit_amount=round(opportunity.value_estimate * self.config.deposit_ratio, 2),
                ))
                logger.info("invoice_created", opportunity_id=opportunity.id,
                            invoice_id=invoice.id, deposit=invoice.deposit_amount)
        except Exception as e:
            logger.error("invoice_lookup_failed", opportunity_id=opportunity.id, error=str(e))
            return None, placeholder

        if invoice.checkout_url:
            return invoice, invoice.checkout_url

        if self.payments is None:
            logger.info("payment_link_placeholder", opportunity_id=opportunity.id, reason="not_configured")
            return invoice, placeholder

        try:
            session = await asyncio.wait_for(
                self.payments.create_checkout_session(
                    amount=invoice.deposit_amount,
                    metadata={"invoice_id": invoice.id, "opportunity_id": opportunity.id},
                    customer_email=lead.email,
                    description=f"PaxBespoke Deposit: {lead.name or 'Project'}",
                    success_url=f"{self.config.site_url}/crm/onboarding/{opportunity.id}?payment=success",
                    cancel_url=f"{self.config.site_url}/crm/onboarding/{opportunity.id}?payment=cancelled",
                ),
                timeout=self.config.external_call_timeout,
            )
        except Exception as e:
            logger.warning("payment_link_failed", opportunity_id=opportunity.id, error=str(e) or type(e).__name__)
            return invoice, placeholder

        await self.store.update_invoice(
            invoice.id, checkout_session_id=session.session_id, checkout_url=session.url,
        )
        invoice = invoice.model_copy(update={
            "checkout_session_id": session.session_id, "checkout_url": session.url,
        })
        return invoice, session.url
