"""
Variable Resolver - builds the placeholder map for a lead/opportunity.

Pure: all inputs arrive on a VariableContext and nothing is fetched here.
Every known key is always present; unknown values resolve to "".
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from models.schemas import (
    Booking, BookingType, Invoice, Lead, Opportunity, Owner, Stage,
)

VARIABLE_KEYS = (
    "name", "first_name", "owner_name", "project_type", "booking_link",
    "meet_link", "payment_link", "amount", "date", "time",
)

# Stage whose messages invite the customer to book the next meeting
NEXT_BOOKING_TYPE: dict[Stage, BookingType] = {
    Stage.NEW_ENQUIRY: BookingType.CALL1,
    Stage.QUALIFIED: BookingType.CALL2,
    Stage.DEPOSIT_PAID: BookingType.ONBOARDING,
}

# Stage whose messages talk about an already-booked meeting
SCHEDULED_BOOKING_TYPE: dict[Stage, BookingType] = {
    Stage.CALL1_SCHEDULED: BookingType.CALL1,
    Stage.CALL2_SCHEDULED: BookingType.CALL2,
    Stage.ONBOARDING_SCHEDULED: BookingType.ONBOARDING,
}

DEFAULT_OWNER_NAME = "the team"
DEFAULT_PROJECT_TYPE = "wardrobe"


@dataclass
class VariableContext:
    lead: Lead
    opportunity: Opportunity
    stage: Optional[Stage] = None
    owner: Optional[Owner] = None
    booking: Optional[Booking] = None
    invoice: Optional[Invoice] = None
    booking_time: Optional[datetime] = None     # overrides booking.scheduled_at
    meet_link: Optional[str] = None             # overrides booking.meet_link
    payment_link: Optional[str] = None          # overrides invoice.checkout_url
    site_url: str = "https://paxbespoke.uk"
    timezone: str = "Europe/London"
    deposit_ratio: float = 0.3


def first_name(name: Optional[str]) -> str:
    return (name or "").split(" ")[0]


def booking_link(
    site_url: str,
    booking_type: Optional[BookingType],
    opportunity_id: str,
    lead: Lead,
) -> str:
    """Public booking page URL, pre-filled for the lead where possible."""
    base = f"{site_url.rstrip('/')}/book"
    if booking_type is None:
        return base
    query = urlencode({
        "type": booking_type.value,
        "opp": opportunity_id,
        "name": lead.name or "",
        "email": lead.email or "",
        "phone": lead.phone or "",
    })
    return f"{base}?{query}"


def format_amount(value: Optional[float], ratio: float) -> str:
    if not value:
        return ""
    return f"{round(value * ratio):,}"


def format_date(moment: datetime, tz: str) -> str:
    local = moment.astimezone(ZoneInfo(tz))
    return f"{local:%a} {local.day} {local:%b}"


def format_time(moment: datetime, tz: str) -> str:
    return moment.astimezone(ZoneInfo(tz)).strftime("%H:%M")


def resolve_variables(ctx: VariableContext) -> dict[str, str]:
    stage = ctx.stage or ctx.opportunity.stage
    lead = ctx.lead

    start = ctx.booking_time or (ctx.booking.scheduled_at if ctx.booking else None)
    meet_link = ctx.meet_link or (ctx.booking.meet_link if ctx.booking else None)
    payment_link = ctx.payment_link or (ctx.invoice.checkout_url if ctx.invoice else None)

    return {
        "name": lead.name or "",
        "first_name": first_name(lead.name),
        "owner_name": (ctx.owner.full_name if ctx.owner and ctx.owner.full_name else DEFAULT_OWNER_NAME),
        "project_type": lead.project_type or DEFAULT_PROJECT_TYPE,
        "booking_link": booking_link(
            ctx.site_url, NEXT_BOOKING_TYPE.get(stage), ctx.opportunity.id, lead,
        ),
        "meet_link": meet_link or "",
        "payment_link": payment_link or "",
        "amount": format_amount(ctx.opportunity.value_estimate, ctx.deposit_ratio),
        "date": format_date(start, ctx.timezone) if start else "",
        "time": format_time(start, ctx.timezone) if start else "",
    }


def merge_variables(refreshed: dict[str, str], snapshot: dict[str, str]) -> dict[str, str]:
    """Refreshed non-empty values win; snapshot values fill the gaps."""
    merged = {k: v for k, v in snapshot.items() if v}
    merged.update({k: v for k, v in refreshed.items() if v})
    for key in VARIABLE_KEYS:
        merged.setdefault(key, "")
    return merged
