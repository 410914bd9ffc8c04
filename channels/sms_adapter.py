"""
SMS Channel Adapter - Twilio Programmable Messaging.

Provides:
- UK number normalisation to E.164 before sending
- Twilio error codes translated into readable messages
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter
from channels.twilio import TwilioMessages, format_e164, parse_twilio_error
from models.schemas import Channel, SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """Sends SMS through the Twilio Messages API. Subject is ignored."""

    channel_type = Channel.SMS

    @property
    def configured(self) -> bool:
        c = self._credentials
        return bool(c.get("account_sid") and c.get("auth_token") and c.get("from_number"))

    async def _do_send(
        self, to: str, subject: Optional[str], body: str, options: dict[str, Any],
    ) -> SendResult:
        messages = TwilioMessages(
            self.client, self._credentials["account_sid"], self._credentials["auth_token"],
        )
        formatted = format_e164(to)
        ok, data = await messages.create({
            "To": formatted,
            "From": self._credentials["from_number"],
            "Body": body,
        })
        if not ok:
            return SendResult(success=False, error=parse_twilio_error(data, "sms"), sent_via="twilio")

        logger.info("sms_sent", to=formatted, msg_sid=data.get("sid"))
        return SendResult(success=True, external_id=data.get("sid"), sent_via="twilio")
