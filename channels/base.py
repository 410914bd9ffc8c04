"""
Channel Adapters - Base infrastructure for outbound senders.

Provides:
- ChannelError: structured error hierarchy
- ChannelMetrics: per-channel send/fail/dry-run/latency tracking
- ChannelAdapter: abstract base wrapping every send with a timeout,
  dry-run handling and exception containment
- ChannelRegistry: adapter lookup and health checks
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Optional

import httpx

from models.schemas import Channel, SendResult

logger = structlog.get_logger()

DRY_RUN = "dry-run"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", code: Optional[int] = None):
        self.channel = channel
        self.code = code
        super().__init__(message)


class ChannelTimeoutError(ChannelError):
    def __init__(self, channel: str = "", timeout: float = 0.0):
        super().__init__(f"{channel} provider did not answer within {timeout:g}s", channel)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, dry-run and latency metrics."""

    def __init__(self, channel: Channel):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.dry_runs: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    def record_dry_run(self):
        self.dry_runs += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "dry_runs": self.dry_runs,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER - Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement `configured` and `_do_send`. The base class wraps
    every send so that callers always get a SendResult back:
      - no credentials  → logged dry-run, reported as success
      - timeout         → failure with a timeout error
      - any exception   → failure with the exception text
    """

    channel_type: Channel

    def __init__(
        self,
        credentials: Optional[dict[str, Any]] = None,
        timeout: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._credentials: dict[str, Any] = dict(credentials or {})
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._metrics = ChannelMetrics(self.channel_type)

    # ── Abstract hooks ────────────────────────────────────────

    @property
    @abc.abstractmethod
    def configured(self) -> bool:
        ...

    @abc.abstractmethod
    async def _do_send(
        self, to: str, subject: Optional[str], body: str, options: dict[str, Any],
    ) -> SendResult:
        ...

    # ── HTTP client ───────────────────────────────────────────

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    # ── Public send ───────────────────────────────────────────

    async def send(
        self,
        to: str,
        subject: Optional[str],
        body: str,
        template_hint: Optional[str] = None,
        recipient_name: Optional[str] = None,
        extra: Optional[str] = None,
    ) -> SendResult:
        channel = self.channel_type.value
        if not self.configured:
            logger.info("channel_dry_run", channel=channel, to=to,
                        subject=subject, preview=body[:50])
            self._metrics.record_dry_run()
            return SendResult(success=True, external_id=DRY_RUN, sent_via=DRY_RUN)

        options = {"template_hint": template_hint, "recipient_name": recipient_name, "extra": extra}
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._do_send(to, subject, body, options), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            error = str(ChannelTimeoutError(channel, self._timeout))
            logger.warning("channel_send_timeout", channel=channel, to=to, timeout=self._timeout)
            self._metrics.record_failure(error)
            return SendResult(success=False, error=error)
        except Exception as e:
            logger.error("channel_send_error", channel=channel, to=to, error=str(e))
            self._metrics.record_failure(str(e))
            return SendResult(success=False, error=str(e))

        if result.success:
            self._metrics.record_send((time.monotonic() - start) * 1000)
            logger.info("channel_send_ok", channel=channel, to=to, external_id=result.external_id)
        else:
            self._metrics.record_failure(result.error or "")
            logger.warning("channel_send_failed", channel=channel, to=to, error=result.error)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "configured": self.configured,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[Channel, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel: Channel) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel)

    def get_available(self) -> list[Channel]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def shutdown_all(self):
        for a in self._adapters.values():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=a.channel_type.value, error=str(e))


def build_channel_registry(settings, http_client: Optional[httpx.AsyncClient] = None) -> ChannelRegistry:
    """Create adapters for every enabled channel in settings."""
    from channels.email_adapter import EmailAdapter
    from channels.sms_adapter import SMSAdapter
    from channels.whatsapp_adapter import WhatsAppAdapter

    timeout = settings.engine.external_call_timeout
    registry = ChannelRegistry()
    for cls in (EmailAdapter, SMSAdapter, WhatsAppAdapter):
        ch_cfg = settings.channels.get(cls.channel_type.value)
        if ch_cfg is not None and not ch_cfg.enabled:
            logger.info("channel_disabled", channel=cls.channel_type.value)
            continue
        credentials = ch_cfg.credentials if ch_cfg else {}
        registry.register(cls(credentials, timeout=timeout, http_client=http_client))
    return registry
