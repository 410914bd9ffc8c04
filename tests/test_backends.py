"""Tests for settings loading and the calendar and payment collaborators."""
import httpx
import pytest
import stripe

from backend.calendar import CalendarError, GoogleCalendarClient, create_calendar_provider, parse_event
from backend.payments import (
    MockPaymentProvider, PaymentError, StripePaymentProvider, create_payment_provider,
)
from config.settings import CalendarConfig, PaymentConfig, load_settings, reset_settings


# ──────────────────────────────────────────────────────────────
#  Settings
# ──────────────────────────────────────────────────────────────

class TestSettings:
    def teardown_method(self):
        reset_settings()

    def test_yaml_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_CRON_SECRET", "s3cret")
        monkeypatch.setenv("TEST_RESEND_KEY", "re_live")
        monkeypatch.delenv("TEST_MISSING", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            'timezone: "Europe/London"\n'
            'cron_secret: "${TEST_CRON_SECRET}"\n'
            'webhook_secret: "${TEST_MISSING}"\n'
            "database:\n"
            '  url: "sqlite:///./test.db"\n'
            '  store_backend: "memory"\n'
            "engine:\n"
            "  message_batch_size: 10\n"
            "  unknown_option: true\n"
            "channels:\n"
            "  email:\n"
            "    credentials:\n"
            '      api_key: "${TEST_RESEND_KEY}"\n'
            "  sms:\n"
            "    enabled: false\n"
        )

        settings = load_settings(str(path))

        assert settings.cron_secret == "s3cret"
        assert settings.webhook_secret == ""
        assert settings.database.store_backend == "memory"
        assert settings.engine.message_batch_size == 10
        assert settings.engine.deposit_ratio == 0.3
        assert settings.channels["email"].credentials["api_key"] == "re_live"
        assert settings.channels["sms"].enabled is False

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.timezone == "Europe/London"
        assert settings.engine.no_show_grace_minutes == 15
        assert settings.queue.poller_enabled is False

    def test_shipped_settings_load(self):
        settings = load_settings()
        assert settings.database.store_backend == "sql"
        assert set(settings.channels) == {"email", "sms", "whatsapp"}


# ──────────────────────────────────────────────────────────────
#  Calendar
# ──────────────────────────────────────────────────────────────

EVENT = {
    "id": "evt-1",
    "status": "confirmed",
    "created": "2025-01-08T09:00:00.000Z",
    "updated": "2025-01-10T10:05:00.000Z",
    "start": {"dateTime": "2025-01-10T10:00:00Z"},
    "end": {"dateTime": "2025-01-10T10:30:00Z"},
    "attendees": [
        {"email": "sam@paxbespoke.uk", "responseStatus": "accepted", "organizer": True},
        {"email": "jane@example.com", "responseStatus": "needsAction"},
    ],
}


class TestCalendar:
    def test_parse_event_marks_owner_by_email(self):
        event = parse_event(EVENT, owner_email="Sam@PaxBespoke.uk")
        assert event.start.isoformat() == "2025-01-10T10:00:00+00:00"
        assert event.updated.minute == 5
        assert [a.is_self for a in event.attendees] == [True, False]
        assert event.attendees[0].is_organizer is True
        assert event.cancelled is False

    def test_parse_event_self_flag(self):
        data = {**EVENT, "attendees": [{"email": "x@y.z", "self": True, "responseStatus": "accepted"}]}
        assert parse_event(data).attendees[0].is_self is True

    def test_all_day_event_has_no_start(self):
        data = {**EVENT, "start": {"date": "2025-01-10"}, "end": {"date": "2025-01-11"}}
        assert parse_event(data).start is None

    @pytest.mark.asyncio
    async def test_google_client_fetches_event(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=EVENT)

        client = GoogleCalendarClient(
            CalendarConfig(access_token="ya29.token", owner_email="sam@paxbespoke.uk"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        event = await client.get_event("evt-1")

        assert event.id == "evt-1"
        assert seen[0].url.path == "/calendar/v3/calendars/primary/events/evt-1"
        assert seen[0].headers["Authorization"] == "Bearer ya29.token"

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(404, json={"error": "notFound"})

        client = GoogleCalendarClient(
            CalendarConfig(access_token="t"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(CalendarError) as exc:
            await client.get_event("gone")
        assert exc.value.status_code == 404
        assert len(seen) == 1

    def test_unconfigured_provider(self):
        assert create_calendar_provider(CalendarConfig()).configured is False


# ──────────────────────────────────────────────────────────────
#  Payments
# ──────────────────────────────────────────────────────────────

class FakeSession:
    id = "cs_live_1"
    url = "https://checkout.stripe.com/c/pay/cs_live_1"


class TestPayments:
    def test_factory(self):
        assert create_payment_provider(PaymentConfig()) is None
        assert isinstance(create_payment_provider(PaymentConfig(stripe_secret_key="sk_test")), StripePaymentProvider)

    @pytest.mark.asyncio
    async def test_stripe_checkout_params(self, monkeypatch):
        captured = {}

        def fake_create(**params):
            captured.update(params)
            return FakeSession()

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        provider = StripePaymentProvider(PaymentConfig(stripe_secret_key="sk_test"))

        session = await provider.create_checkout_session(
            1500.0, {"opportunity_id": "opp-1"}, customer_email="jane@example.com",
            success_url="https://paxbespoke.uk/paid", cancel_url="https://paxbespoke.uk/cancel",
        )

        assert session.session_id == "cs_live_1"
        assert captured["api_key"] == "sk_test"
        assert captured["mode"] == "payment"
        assert captured["line_items"][0]["price_data"]["unit_amount"] == 150000
        assert captured["line_items"][0]["price_data"]["currency"] == "gbp"
        assert captured["customer_email"] == "jane@example.com"
        assert captured["metadata"] == {"opportunity_id": "opp-1"}

    @pytest.mark.asyncio
    async def test_stripe_errors_become_payment_errors(self, monkeypatch):
        def fake_create(**params):
            raise stripe.StripeError("card network down")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        provider = StripePaymentProvider(PaymentConfig(stripe_secret_key="sk_test"))
        with pytest.raises(PaymentError):
            await provider.create_checkout_session(100.0, {})

    @pytest.mark.asyncio
    async def test_mock_provider(self):
        provider = MockPaymentProvider()
        session = await provider.create_checkout_session(1500.0, {"opportunity_id": "opp-1"})
        assert session.url.endswith(session.session_id)
        assert provider.requests[0]["amount"] == 1500.0
