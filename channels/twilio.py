"""
Shared Twilio helpers for the SMS and WhatsApp adapters.
"""
from __future__ import annotations

import re
from typing import Any, Optional

import httpx

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

# Codes that mean "outside the WhatsApp session window", recoverable with a content template
WHATSAPP_WINDOW_CODES = (63007, 63016)

_TWILIO_ERRORS: dict[int, str] = {
    63007: "Recipient has not opted in to receive WhatsApp messages. They need to message you first or opt in.",
    63016: "Recipient has not opted in to WhatsApp messages from this sender.",
    21211: "Invalid phone number: the \"To\" number is not a valid phone number.",
    21212: "Invalid phone number: the \"To\" number is not a valid mobile number.",
    21214: "The \"To\" number is not reachable.",
    21408: "Permission denied: the Twilio account cannot send to this region.",
    21610: "Recipient has opted out of messages.",
    21614: "The \"To\" number is not a valid mobile number for SMS.",
    20003: "Twilio authentication failed. Check the account SID and auth token.",
}


def format_e164(phone: str) -> str:
    """Normalise a UK phone number to E.164 (+44...)."""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("44"):
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+44{digits[1:]}"
    if digits.startswith("7"):
        return f"+44{digits}"
    return f"+{digits}"


def parse_twilio_error(data: Optional[dict[str, Any]], channel: str = "sms") -> str:
    if not data or not data.get("code"):
        return (data or {}).get("message") or "Unknown error"
    code = int(data["code"])
    if code == 21608:
        if channel == "whatsapp":
            return "WhatsApp sender number not approved. Check the configured WhatsApp number."
        return "Cannot send SMS from this number. Check the configured phone number."
    return _TWILIO_ERRORS.get(code, f"Twilio error {code}: {data.get('message', '')}")


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text}
    return data if isinstance(data, dict) else {}


class TwilioMessages:
    """Thin wrapper over the Twilio Messages REST resource."""

    def __init__(self, client: httpx.AsyncClient, account_sid: str, auth_token: str):
        self._client = client
        self._auth = (account_sid, auth_token)
        self._url = f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json"
        self._status_url = f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages/{{sid}}.json"

    async def create(self, params: dict[str, str]) -> tuple[bool, dict[str, Any]]:
        response = await self._client.post(self._url, data=params, auth=self._auth)
        return response.is_success, _safe_json(response)

    async def fetch(self, sid: str) -> dict[str, Any]:
        response = await self._client.get(self._status_url.format(sid=sid), auth=self._auth)
        return _safe_json(response)
