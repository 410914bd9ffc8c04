"""
Message Queue Processor - delivers due rows from the message log.

One pass:
  claim (queued → sending)  →  refresh variables  →  render  →  send  →  sent | failed

Only rows this pass claimed are touched, so two overlapping passes never
send the same row twice. Anything that goes wrong with a single row is
recorded on that row; only failure to claim the batch propagates.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelRegistry
from config.settings import EngineConfig
from database.store_base import CRMStore
from models.schemas import (
    Booking, MessageStatus, QueuedMessage, SendResult, Stage,
)
from templates.registry import TemplateStore
from templates.render import interpolate
from templates.variables import (
    SCHEDULED_BOOKING_TYPE, VariableContext, first_name, merge_variables,
    resolve_variables,
)

logger = structlog.get_logger()


class MessageQueueProcessor:

    def __init__(
        self,
        store: CRMStore,
        templates: TemplateStore,
        channels: ChannelRegistry,
        config: EngineConfig,
        timezone_name: str = "Europe/London",
    ):
        self.store = store
        self.templates = templates
        self.channels = channels
        self.config = config
        self.timezone_name = timezone_name

    async def process_queued_messages(self, now: Optional[datetime] = None) -> int:
        """Run one delivery pass. Returns how many rows reached sent/failed."""
        now = now or datetime.now(timezone.utc)

        # Store failure here is a pass-level error for the caller
        batch = await self.store.claim_due_messages(now, self.config.message_batch_size)
        if not batch:
            return 0

        logger.info("queue_pass_started", claimed=len(batch))
        processed = 0
        for message in batch:
            try:
                if await self._process_one(message, now):
                    processed += 1
            except Exception as e:
                logger.error("queue_message_error", message_id=message.id, error=str(e))
                try:
                    await self._finish(message, SendResult(success=False, error=str(e)), {}, now)
                    processed += 1
                except Exception as inner:
                    logger.error("queue_message_finish_failed", message_id=message.id, error=str(inner))

        logger.info("queue_pass_complete", claimed=len(batch), processed=processed)
        return processed

    async def queue_depth(self, now: Optional[datetime] = None) -> dict[str, int]:
        return await self.store.queue_depth(now or datetime.now(timezone.utc))

    # ── One row ───────────────────────────────────────────────

    async def _process_one(self, message: QueuedMessage, now: datetime) -> bool:
        """Returns True when the row reached a terminal status."""
        lead = await self.store.get_lead(message.lead_id)
        if lead is None:
            await self._finish(message, SendResult(success=False, error="Lead not found"), {}, now)
            return True

        to = lead.address_for(message.channel)
        if not to:
            # Contact details may be added later; leave the row for a future pass
            await self.store.release_message(message.id)
            logger.info("queue_message_released", message_id=message.id,
                        channel=message.channel.value, reason="no_contact")
            return False

        variables = await self._variables_for(message)

        subject = message.metadata.get("subject")
        body = message.metadata.get("body")
        if not body:
            template = await self.templates.get_by_slug(message.template_slug)
            if template is None:
                error = f"Template not found: {message.template_slug}"
                await self._finish(message, SendResult(success=False, error=error), {}, now)
                return True
            subject, body = template.subject, template.body

        rendered_subject = interpolate(subject, variables) if subject else None
        rendered_body = interpolate(body, variables)

        adapter = self.channels.get(message.channel)
        if adapter is None:
            result = SendResult(success=False, error=f"Channel not available: {message.channel.value}")
        else:
            result = await adapter.send(
                to,
                rendered_subject,
                rendered_body,
                template_hint=message.template_slug,
                recipient_name=first_name(lead.name),
                extra=variables.get("date") or variables.get("time") or None,
            )

        await self._finish(message, result, {
            "rendered_subject": rendered_subject,
            "rendered_body": rendered_body,
        }, now)
        return True

    async def _finish(
        self, message: QueuedMessage, result: SendResult, extra: dict[str, Any], now: datetime,
    ):
        metadata = dict(extra)
        if result.success:
            status = MessageStatus.SENT.value
            sent_at = now
            metadata.update({
                "sent_at": now.isoformat(),
                "external_id": result.external_id,
                "sent_via": result.sent_via,
            })
            logger.info("message_sent", message_id=message.id, channel=message.channel.value,
                        template=message.template_slug, external_id=result.external_id)
        else:
            status = MessageStatus.FAILED.value
            sent_at = None
            metadata["error"] = result.error
            logger.warning("message_failed", message_id=message.id, channel=message.channel.value,
                           template=message.template_slug, error=result.error)
        await self.store.finish_message(message.id, status, sent_at, metadata)

    # ── Variables ─────────────────────────────────────────────

    async def _variables_for(self, message: QueuedMessage) -> dict[str, str]:
        """
        Current values merged over the enqueue-time snapshot. Pinned keys
        keep their snapshot value, and a lookup failure falls back to the
        snapshot alone.
        """
        snapshot = message.metadata.get("variables") or {}
        try:
            refreshed = await self._refresh_variables(message)
        except Exception as e:
            logger.warning("variable_refresh_failed", message_id=message.id, error=str(e))
            refreshed = {}
        merged = merge_variables(refreshed, snapshot)
        for key in message.metadata.get("pinned_variables") or []:
            if snapshot.get(key):
                merged[key] = snapshot[key]
        return merged

    async def _refresh_variables(self, message: QueuedMessage) -> dict[str, str]:
        if not message.opportunity_id:
            return {}
        opportunity = await self.store.get_opportunity(message.opportunity_id)
        lead = await self.store.get_lead(message.lead_id)
        if opportunity is None or lead is None:
            return {}

        try:
            stage = Stage(message.trigger_stage) if message.trigger_stage else opportunity.stage
        except ValueError:
            stage = opportunity.stage

        owner_id = opportunity.owner_user_id or lead.owner_user_id
        owner = await self.store.get_owner(owner_id) if owner_id else None

        # A row queued with an explicit booking time has no booking to refresh from
        pinned = message.metadata.get("pinned_variables") or []
        booking: Optional[Booking] = None
        booking_id = message.metadata.get("booking_id")
        if booking_id:
            booking = await self.store.get_booking(booking_id)
        elif stage in SCHEDULED_BOOKING_TYPE and "date" not in pinned:
            booking = await self.store.latest_booking(opportunity.id, SCHEDULED_BOOKING_TYPE[stage])

        invoice = await self.store.get_invoice_for_opportunity(opportunity.id)

        return resolve_variables(VariableContext(
            lead=lead,
            opportunity=opportunity,
            stage=stage,
            owner=owner,
            booking=booking,
            invoice=invoice,
            site_url=self.config.site_url,
            timezone=self.timezone_name,
            deposit_ratio=self.config.deposit_ratio,
        ))
