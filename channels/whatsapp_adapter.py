"""
WhatsApp Channel Adapter - Twilio WhatsApp.

Free-form messages only reach a customer inside the 24h session window.
Outside it Twilio rejects the message (63007 / 63016), either synchronously
or a few seconds later as an "undelivered" status, and the adapter retries
with an approved content template:

  1. free-form body
  2. content template mapped from the CRM template slug
  3. generic fallback content template
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter
from channels.twilio import (
    TwilioMessages, WHATSAPP_WINDOW_CODES, format_e164, parse_twilio_error,
)
from models.schemas import Channel, SendResult

logger = structlog.get_logger()

# Slugs whose content template takes the meeting date/time as its second variable
_DATED_TEMPLATES = {
    "call1_confirmed", "call1_reminder", "call1_reminder_2h",
    "call2_invite", "call2_confirmed", "call2_reminder",
    "onboarding_confirmed",
}

_REJECTED_STATUSES = ("undelivered", "failed")


class WhatsAppAdapter(ChannelAdapter):
    """
    Credentials:
      account_sid, auth_token, from_number
      content_templates: {template_slug: content_sid}
      fallback_content_sid: generic approved template
      status_poll_delay: seconds to wait before checking delivery (default 3)
    """

    channel_type = Channel.WHATSAPP

    @property
    def configured(self) -> bool:
        c = self._credentials
        return bool(c.get("account_sid") and c.get("auth_token") and c.get("from_number"))

    @property
    def _from(self) -> str:
        raw = self._credentials["from_number"]
        return raw if raw.startswith("whatsapp:") else f"whatsapp:{raw}"

    async def _delivered(self, messages: TwilioMessages, sid: str) -> tuple[bool, Any]:
        delay = float(self._credentials.get("status_poll_delay", 3.0))
        if delay > 0:
            await asyncio.sleep(delay)
        status = await messages.fetch(sid)
        return status.get("status") not in _REJECTED_STATUSES, status.get("error_code")

    def _content_templates(self, slug: Optional[str], first_name: str, extra: Optional[str]):
        mapping = self._credentials.get("content_templates") or {}
        candidates = []
        stage_sid = mapping.get(slug) if slug else None
        if stage_sid:
            variables = {"1": first_name}
            if slug in _DATED_TEMPLATES:
                variables["2"] = extra or "your scheduled time"
            candidates.append((f"stage:{slug}", stage_sid, variables))
        fallback = self._credentials.get("fallback_content_sid")
        if fallback and fallback != stage_sid:
            candidates.append(("generic-fallback", fallback, None))
        return candidates

    async def _do_send(
        self, to: str, subject: Optional[str], body: str, options: dict[str, Any],
    ) -> SendResult:
        messages = TwilioMessages(
            self.client, self._credentials["account_sid"], self._credentials["auth_token"],
        )
        recipient = f"whatsapp:{format_e164(to)}"

        ok, data = await messages.create({"To": recipient, "From": self._from, "Body": body})
        if ok:
            delivered, error_code = await self._delivered(messages, data.get("sid", ""))
            if delivered:
                return SendResult(success=True, external_id=data.get("sid"), sent_via="twilio")
            logger.warning("whatsapp_freeform_rejected", to=to, error_code=error_code)
        elif data.get("code") not in WHATSAPP_WINDOW_CODES:
            return SendResult(success=False, error=parse_twilio_error(data, "whatsapp"), sent_via="twilio")

        first_name = (options.get("recipient_name") or "there").split(" ")[0]
        for label, sid, variables in self._content_templates(
            options.get("template_hint"), first_name, options.get("extra"),
        ):
            params = {"To": recipient, "From": self._from, "ContentSid": sid}
            if variables:
                params["ContentVariables"] = json.dumps(variables)
            logger.info("whatsapp_trying_template", template=label, content_sid=sid)

            ok, data = await messages.create(params)
            if not ok:
                logger.warning("whatsapp_template_api_error", template=label, error=data.get("message"))
                continue
            delivered, error_code = await self._delivered(messages, data.get("sid", ""))
            if delivered:
                return SendResult(success=True, external_id=data.get("sid"), sent_via="twilio")
            logger.warning("whatsapp_template_rejected", template=label, error_code=error_code)

        return SendResult(
            success=False,
            error="WhatsApp: outside 24h window. All templates rejected or pending approval. "
                  "The customer needs to message you first.",
            sent_via="twilio",
        )
