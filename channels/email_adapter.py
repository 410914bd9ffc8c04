"""
Email Channel Adapter - Resend HTTP API.

Provides:
- JSON POST to the Resend /emails endpoint with bearer auth
- Plain text body plus a simple branded HTML rendition
- Dry-run when no API key is configured
"""
from __future__ import annotations

import html
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.schemas import Channel, SendResult

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM = "PaxBespoke <noreply@paxbespoke.uk>"


def plain_to_html(body: str) -> str:
    """Render a plain-text body as escaped HTML paragraphs."""
    paragraphs = [p for p in body.replace("\r\n", "\n").split("\n\n") if p.strip()]
    rendered = "".join(
        f"<p>{html.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs
    )
    return (
        '<div style="font-family:Helvetica,Arial,sans-serif;font-size:15px;'
        f'line-height:1.5;color:#1f2933">{rendered}</div>'
    )


class EmailAdapter(ChannelAdapter):
    """Sends email through Resend; the sender identity comes from config."""

    channel_type = Channel.EMAIL

    @property
    def configured(self) -> bool:
        return bool(self._credentials.get("api_key"))

    @property
    def from_address(self) -> str:
        return self._credentials.get("from_address") or DEFAULT_FROM

    async def _do_send(
        self, to: str, subject: Optional[str], body: str, options: dict[str, Any],
    ) -> SendResult:
        response = await self.client.post(
            self._credentials.get("api_url", RESEND_API_URL),
            headers={"Authorization": f"Bearer {self._credentials['api_key']}"},
            json={
                "from": self.from_address,
                "to": [to],
                "subject": subject or "",
                "html": plain_to_html(body),
                "text": body,
            },
        )
        if not response.is_success:
            return SendResult(success=False, error=response.text, sent_via="resend")

        data = response.json()
        logger.info("email_sent", to=to, subject=subject, message_id=data.get("id"))
        return SendResult(success=True, external_id=data.get("id"), sent_via="resend")
