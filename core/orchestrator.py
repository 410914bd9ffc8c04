"""
Orchestrator - wires settings into the running CRM engine.

  Settings ─▶ store, channels, calendar, payments
           ─▶ AutomationEngine ─▶ AutomationDispatcher ─▶ StageChangeService
           ─▶ MessageQueueProcessor
           ─▶ MeetingTracker
           ─▶ SweepPoller (optional)

Every component takes its collaborators explicitly; this module is the
only place that reads settings to build them. Tests pass doubles for any
collaborator they want to control.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from backend.calendar import CalendarProvider, create_calendar_provider
from backend.payments import PaymentProvider, create_payment_provider
from backend.poller import SweepPoller
from channels.base import ChannelRegistry, build_channel_registry
from config.settings import Settings, get_settings
from database.store_base import CRMStore
from database.store_factory import create_store
from job_queue.dispatcher import AutomationDispatcher, StageChangeService
from job_queue.processor import MessageQueueProcessor
from rules.engine import AutomationEngine
from templates.registry import TemplateStore
from tracking.meeting_tracker import MeetingTracker

logger = structlog.get_logger()

_UNSET = object()


class Orchestrator:
    """Holds the engine's components and owns their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        store: CRMStore,
        channels: ChannelRegistry,
        calendar: Optional[CalendarProvider] = None,
        payments: Optional[PaymentProvider] = None,
    ):
        self.settings = settings
        self.store = store
        self.channels = channels
        self.calendar = calendar
        self.payments = payments

        tz = settings.timezone
        self.templates = TemplateStore(store)
        self.automation = AutomationEngine(
            store, self.templates, settings.engine, timezone_name=tz, payments=payments,
        )
        self.processor = MessageQueueProcessor(
            store, self.templates, channels, settings.engine, timezone_name=tz,
        )
        self.tracker = MeetingTracker(store, calendar, settings.engine, timezone_name=tz)
        self.dispatcher = AutomationDispatcher(self.automation, workers=settings.queue.automation_workers)
        self.stage_changes = StageChangeService(store, self.dispatcher)

        self.poller: Optional[SweepPoller] = None
        if settings.queue.poller_enabled:
            self.poller = SweepPoller()
            self.poller.add("messages", self.processor.process_queued_messages,
                            settings.queue.message_poll_interval)
            self.poller.add("meetings", self.tracker.run_tracking,
                            settings.queue.tracking_poll_interval)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        if self.settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db()
        self.dispatcher.start()
        if self.poller:
            await self.poller.start()
        logger.info("crm_engine_started",
                    store=type(self.store).__name__,
                    channels=[c.value for c in self.channels.get_available()],
                    calendar=self.tracker.calendar_configured,
                    payments=self.payments is not None,
                    poller=self.poller is not None)

    async def stop(self):
        if self.poller:
            await self.poller.stop()
        await self.dispatcher.stop()
        await self.channels.shutdown_all()
        if self.calendar:
            await self.calendar.close()
        if self.settings.database.store_backend == "sql":
            from database.session import close_db
            await close_db()
        logger.info("crm_engine_stopped")

    # ── Cron passes ───────────────────────────────────────────

    async def run_message_pass(self) -> dict[str, Any]:
        processed = await self.processor.process_queued_messages()
        return {"processed": processed, "timestamp": datetime.now(timezone.utc).isoformat()}

    async def run_tracking_pass(self) -> dict[str, Any]:
        return await self.tracker.run_tracking()

    async def health(self) -> dict[str, Any]:
        return {
            "channels": await self.channels.health_check_all(),
            "calendar_configured": self.tracker.calendar_configured,
            "payments_configured": self.payments is not None,
            "automation_jobs_pending": self.dispatcher.pending,
        }


def create_orchestrator(
    settings: Optional[Settings] = None,
    store: Optional[CRMStore] = None,
    channels: Optional[ChannelRegistry] = None,
    calendar: Any = _UNSET,
    payments: Any = _UNSET,
) -> Orchestrator:
    """
    Build an Orchestrator from settings. Any collaborator passed in is used
    as-is (None is a valid explicit value for calendar and payments).
    """
    settings = settings or get_settings()
    if store is None:
        store = create_store({
            "store_backend": settings.database.store_backend,
            "url": settings.database.url,
        })
    if channels is None:
        channels = build_channel_registry(settings)
    if calendar is _UNSET:
        calendar = create_calendar_provider(settings.calendar, timeout=settings.engine.external_call_timeout)
    if payments is _UNSET:
        payments = create_payment_provider(settings.payments)
    return Orchestrator(settings, store, channels, calendar=calendar, payments=payments)
