"""Shared test fixtures for the CRM engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import pytest
import pytest_asyncio

from backend.calendar import MockCalendarClient
from backend.payments import MockPaymentProvider
from channels.base import ChannelAdapter, ChannelRegistry
from config.settings import EngineConfig, Settings
from database.store_memory import InMemoryStore
from models.schemas import (
    Channel, Lead, Opportunity, Owner, SendResult, Stage,
)
from templates.registry import TemplateStore


class RecordingAdapter(ChannelAdapter):
    """Configured adapter that records sends instead of calling a provider."""

    def __init__(self, channel: Channel, fail: bool = False):
        self.channel_type = channel
        super().__init__({"recording": True})
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    @property
    def configured(self) -> bool:
        return True

    async def _do_send(self, to: str, subject: Optional[str], body: str, options: dict[str, Any]) -> SendResult:
        self.sent.append({"to": to, "subject": subject, "body": body, **options})
        if self.fail:
            return SendResult(success=False, error="provider rejected", sent_via="test")
        return SendResult(success=True, external_id=f"{self.channel_type.value}-{len(self.sent)}", sent_via="test")


@dataclass
class CRM:
    store: InMemoryStore
    lead: Lead
    owner: Owner
    opportunity: Opportunity


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.cron_secret = "cron-test-secret"
    s.webhook_secret = "hook-test-secret"
    s.database.store_backend = "memory"
    return s


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def templates(store) -> TemplateStore:
    return TemplateStore(store)


@pytest.fixture
def adapters() -> dict[Channel, RecordingAdapter]:
    return {ch: RecordingAdapter(ch) for ch in Channel}


@pytest.fixture
def registry(adapters) -> ChannelRegistry:
    reg = ChannelRegistry()
    for adapter in adapters.values():
        reg.register(adapter)
    return reg


@pytest.fixture
def calendar() -> MockCalendarClient:
    return MockCalendarClient()


@pytest.fixture
def payments() -> MockPaymentProvider:
    return MockPaymentProvider()


@pytest_asyncio.fixture
async def crm(store) -> CRM:
    """A lead with email and phone, an owner, and an opportunity worth £5,000."""
    owner = await store.upsert_owner(Owner(id="owner-1", full_name="Sam Carter", email="sam@paxbespoke.uk"))
    lead = await store.upsert_lead(Lead(
        id="lead-1",
        name="Jane Smith",
        email="jane@example.com",
        phone="07700 900123",
        project_type="walk-in wardrobe",
        owner_user_id=owner.id,
    ))
    opportunity = await store.upsert_opportunity(Opportunity(
        id="opp-1",
        lead_id=lead.id,
        stage=Stage.NEW_ENQUIRY,
        value_estimate=5000,
        owner_user_id=owner.id,
    ))
    return CRM(store=store, lead=lead, owner=owner, opportunity=opportunity)
