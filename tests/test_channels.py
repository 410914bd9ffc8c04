"""Tests for the outbound channel adapters."""
import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from channels.base import DRY_RUN, build_channel_registry
from channels.email_adapter import EmailAdapter, plain_to_html
from channels.sms_adapter import SMSAdapter
from channels.twilio import format_e164, parse_twilio_error
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import ChannelConfig, Settings
from models.schemas import Channel

TWILIO = {"account_sid": "AC123", "auth_token": "secret", "from_number": "+441234567890"}


class Recorder:
    """MockTransport handler that replays canned responses in order."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def form(self, index: int) -> dict[str, str]:
        parsed = parse_qs(self.requests[index].content.decode())
        return {k: v[0] for k, v in parsed.items()}


def twilio_ok(sid="SM1", status="queued") -> httpx.Response:
    return httpx.Response(201, json={"sid": sid, "status": status})


def twilio_error(code: int, status=400) -> httpx.Response:
    return httpx.Response(status, json={"code": code, "message": "rejected"})


# ──────────────────────────────────────────────────────────────
#  Twilio helpers
# ──────────────────────────────────────────────────────────────

class TestTwilioHelpers:
    @pytest.mark.parametrize("raw, expected", [
        ("07700 900123", "+447700900123"),
        ("447700900123", "+447700900123"),
        ("7700900123", "+447700900123"),
        ("+1 415 555 0100", "+14155550100"),
    ])
    def test_format_e164(self, raw, expected):
        assert format_e164(raw) == expected

    def test_known_error_code(self):
        assert "not a valid phone number" in parse_twilio_error({"code": 21211})

    def test_sender_error_depends_on_channel(self):
        assert "SMS" in parse_twilio_error({"code": 21608}, "sms")
        assert "WhatsApp" in parse_twilio_error({"code": 21608}, "whatsapp")

    def test_unknown_code(self):
        assert parse_twilio_error({"code": 30001, "message": "Queue overflow"}) == "Twilio error 30001: Queue overflow"

    def test_no_code(self):
        assert parse_twilio_error({"message": "Bad request"}) == "Bad request"
        assert parse_twilio_error(None) == "Unknown error"


# ──────────────────────────────────────────────────────────────
#  Email
# ──────────────────────────────────────────────────────────────

class TestEmailAdapter:
    @pytest.mark.asyncio
    async def test_dry_run_without_api_key(self):
        recorder = Recorder()
        adapter = EmailAdapter({}, http_client=recorder.client())

        result = await adapter.send("jane@example.com", "Hi", "Body")

        assert result.success is True
        assert result.external_id == DRY_RUN
        assert result.sent_via == DRY_RUN
        assert recorder.requests == []
        health = await adapter.health_check()
        assert health["configured"] is False
        assert health["metrics"]["dry_runs"] == 1

    @pytest.mark.asyncio
    async def test_posts_to_resend(self):
        recorder = Recorder(httpx.Response(200, json={"id": "re_123"}))
        adapter = EmailAdapter(
            {"api_key": "re_key", "from_address": "PaxBespoke <hello@paxbespoke.uk>"},
            http_client=recorder.client(),
        )

        result = await adapter.send("jane@example.com", "Your call", "Hi Jane\n\nSee you soon")

        assert result.success is True
        assert result.external_id == "re_123"
        assert result.sent_via == "resend"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.resend.com/emails"
        assert request.headers["Authorization"] == "Bearer re_key"
        payload = json.loads(request.content)
        assert payload["from"] == "PaxBespoke <hello@paxbespoke.uk>"
        assert payload["to"] == ["jane@example.com"]
        assert payload["subject"] == "Your call"
        assert payload["text"] == "Hi Jane\n\nSee you soon"
        assert "<p>Hi Jane</p><p>See you soon</p>" in payload["html"]

    @pytest.mark.asyncio
    async def test_provider_error(self):
        recorder = Recorder(httpx.Response(422, text="invalid from address"))
        adapter = EmailAdapter({"api_key": "re_key"}, http_client=recorder.client())
        result = await adapter.send("jane@example.com", "Hi", "Body")
        assert result.success is False
        assert result.error == "invalid from address"

    def test_html_is_escaped(self):
        assert "&lt;script&gt;" in plain_to_html("<script>")


# ──────────────────────────────────────────────────────────────
#  SMS
# ──────────────────────────────────────────────────────────────

class TestSMSAdapter:
    @pytest.mark.asyncio
    async def test_sends_normalised_number(self):
        recorder = Recorder(twilio_ok("SM42"))
        adapter = SMSAdapter(TWILIO, http_client=recorder.client())

        result = await adapter.send("07700 900123", "ignored", "Hi Jane")

        assert result.success is True
        assert result.external_id == "SM42"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["Authorization"].startswith("Basic ")
        assert recorder.form(0) == {"To": "+447700900123", "From": "+441234567890", "Body": "Hi Jane"}

    @pytest.mark.asyncio
    async def test_error_code_is_readable(self):
        recorder = Recorder(twilio_error(21610))
        adapter = SMSAdapter(TWILIO, http_client=recorder.client())
        result = await adapter.send("07700900123", None, "Hi")
        assert result.success is False
        assert result.error == "Recipient has opted out of messages."

    @pytest.mark.asyncio
    async def test_partial_credentials_is_dry_run(self):
        adapter = SMSAdapter({"account_sid": "AC123"})
        result = await adapter.send("07700900123", None, "Hi")
        assert result.external_id == DRY_RUN


# ──────────────────────────────────────────────────────────────
#  WhatsApp
# ──────────────────────────────────────────────────────────────

def whatsapp(recorder: Recorder, **extra) -> WhatsAppAdapter:
    credentials = {
        **TWILIO,
        "from_number": "+441234567891",
        "status_poll_delay": 0,
        "content_templates": {"call1_confirmed": "HX_call1"},
        "fallback_content_sid": "HX_generic",
        **extra,
    }
    return WhatsAppAdapter(credentials, http_client=recorder.client())


class TestWhatsAppAdapter:
    @pytest.mark.asyncio
    async def test_free_form_delivered(self):
        recorder = Recorder(twilio_ok("SM1"), httpx.Response(200, json={"status": "sent"}))
        result = await whatsapp(recorder).send("07700900123", None, "Hi Jane")

        assert result.success is True
        assert result.external_id == "SM1"
        form = recorder.form(0)
        assert form["To"] == "whatsapp:+447700900123"
        assert form["From"] == "whatsapp:+441234567891"
        assert form["Body"] == "Hi Jane"
        assert str(recorder.requests[1].url).endswith("/Messages/SM1.json")

    @pytest.mark.asyncio
    async def test_window_error_falls_back_to_stage_template(self):
        recorder = Recorder(
            twilio_error(63016),
            twilio_ok("SM2"),
            httpx.Response(200, json={"status": "delivered"}),
        )
        result = await whatsapp(recorder).send(
            "07700900123", None, "Hi Jane", template_hint="call1_confirmed",
            recipient_name="Jane", extra="Fri 10 Jan",
        )

        assert result.success is True
        assert result.external_id == "SM2"
        form = recorder.form(1)
        assert form["ContentSid"] == "HX_call1"
        assert json.loads(form["ContentVariables"]) == {"1": "Jane", "2": "Fri 10 Jan"}
        assert "Body" not in form

    @pytest.mark.asyncio
    async def test_undelivered_free_form_uses_generic_template(self):
        recorder = Recorder(
            twilio_ok("SM1"),
            httpx.Response(200, json={"status": "undelivered", "error_code": 63016}),
            twilio_ok("SM3"),
            httpx.Response(200, json={"status": "queued"}),
        )
        result = await whatsapp(recorder).send("07700900123", None, "Hi", template_hint="deposit_request")

        assert result.success is True
        assert result.external_id == "SM3"
        form = recorder.form(2)
        assert form["ContentSid"] == "HX_generic"
        assert "ContentVariables" not in form

    @pytest.mark.asyncio
    async def test_all_templates_rejected(self):
        recorder = Recorder(
            twilio_error(63007),
            twilio_error(63016),
            twilio_ok("SM4"),
            httpx.Response(200, json={"status": "failed", "error_code": 63016}),
        )
        result = await whatsapp(recorder).send("07700900123", None, "Hi", template_hint="call1_confirmed")

        assert result.success is False
        assert "outside 24h window" in result.error
        assert len(recorder.requests) == 4

    @pytest.mark.asyncio
    async def test_other_errors_do_not_fall_back(self):
        recorder = Recorder(twilio_error(21211))
        result = await whatsapp(recorder).send("07700900123", None, "Hi", template_hint="call1_confirmed")
        assert result.success is False
        assert "not a valid phone number" in result.error
        assert len(recorder.requests) == 1


# ──────────────────────────────────────────────────────────────
#  Failure containment and registry
# ──────────────────────────────────────────────────────────────

class TestContainment:
    @pytest.mark.asyncio
    async def test_timeout_becomes_failure(self):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"id": "late"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow))
        adapter = EmailAdapter({"api_key": "re_key"}, timeout=0.05, http_client=client)

        result = await adapter.send("jane@example.com", "Hi", "Body")

        assert result.success is False
        assert "did not answer" in result.error
        assert (await adapter.health_check())["metrics"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_transport_error_becomes_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        adapter = SMSAdapter(TWILIO, http_client=client)
        result = await adapter.send("07700900123", None, "Hi")
        assert result.success is False
        assert "connection refused" in result.error


class TestRegistry:
    def test_disabled_channel_not_registered(self):
        settings = Settings()
        settings.channels = {
            "email": ChannelConfig(credentials={"api_key": "k"}),
            "sms": ChannelConfig(enabled=False),
        }
        registry = build_channel_registry(settings)

        assert registry.get(Channel.SMS) is None
        assert registry.get(Channel.EMAIL).configured is True
        assert registry.get(Channel.WHATSAPP).configured is False
        assert set(registry.get_available()) == {Channel.EMAIL, Channel.WHATSAPP}
