"""
Calendar Provider - read access to booking events.

The tracker only ever needs one call: fetch an event by id and look at its
status, start time, attendee responses and created/updated timestamps.
Access tokens are supplied by configuration; refreshing them is handled
outside this engine.
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    retry, retry_if_exception, stop_after_attempt, wait_exponential,
)

from config.settings import CalendarConfig
from models.schemas import CalendarAttendee, CalendarEvent

logger = structlog.get_logger()


class CalendarError(Exception):
    """Raised when an event cannot be fetched."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, CalendarError):
        return exc.status_code in (429, 500, 502, 503, 504)
    return False


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_event(data: dict[str, Any], owner_email: str = "") -> CalendarEvent:
    """Convert a Google Calendar event resource into a CalendarEvent."""
    owner_email = owner_email.lower()
    attendees = [
        CalendarAttendee(
            email=a.get("email", ""),
            response_status=a.get("responseStatus", "needsAction"),
            is_self=bool(a.get("self")) or (bool(owner_email) and a.get("email", "").lower() == owner_email),
            is_organizer=bool(a.get("organizer")),
        )
        for a in data.get("attendees") or []
    ]
    return CalendarEvent(
        id=data.get("id", ""),
        status=data.get("status", "confirmed"),
        created=_parse_time(data.get("created")),
        updated=_parse_time(data.get("updated")),
        start=_parse_time((data.get("start") or {}).get("dateTime")),
        end=_parse_time((data.get("end") or {}).get("dateTime")),
        attendees=attendees,
    )


class CalendarProvider(abc.ABC):
    """Abstract base for calendar providers."""

    @property
    def configured(self) -> bool:
        return True

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> CalendarEvent:
        ...

    async def close(self):
        pass


class GoogleCalendarClient(CalendarProvider):
    """Google Calendar v3 REST client (events.get)."""

    def __init__(self, config: CalendarConfig, timeout: float = 20.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._timeout = timeout
        self.client = http_client

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self._timeout)
        return self.client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, path: str) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.get(
            f"{self.config.base_url}{path}",
            headers={"Authorization": f"Bearer {self.config.access_token}"},
        )
        if not response.is_success:
            raise CalendarError(
                f"Calendar API returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    async def get_event(self, event_id: str) -> CalendarEvent:
        calendar_id = quote(self.config.calendar_id, safe="")
        data = await self._request(f"/calendars/{calendar_id}/events/{quote(event_id, safe='')}")
        return parse_event(data, owner_email=self.config.owner_email)

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockCalendarClient(CalendarProvider):
    """
    In-memory calendar for development and testing.
    Events are registered up front; unknown ids raise CalendarError(404).
    """

    def __init__(self, events: Optional[dict[str, CalendarEvent]] = None):
        self.events: dict[str, CalendarEvent] = dict(events or {})
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def add(self, event: CalendarEvent):
        self.events[event.id] = event

    async def get_event(self, event_id: str) -> CalendarEvent:
        self.calls.append(event_id)
        if event_id in self.failing:
            raise CalendarError(f"Simulated failure for {event_id}", status_code=503)
        event = self.events.get(event_id)
        if event is None:
            raise CalendarError(f"Event {event_id} not found", status_code=404)
        return event


def create_calendar_provider(config: CalendarConfig, timeout: float = 20.0) -> CalendarProvider:
    """Factory: Google when an access token is configured, otherwise the client reports unconfigured."""
    if not config.configured:
        logger.warning("calendar_not_configured", reason="no access token")
    return GoogleCalendarClient(config, timeout=timeout)
