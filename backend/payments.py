"""
Payment Provider - hosted checkout sessions for deposit invoices.

The Stripe SDK is synchronous, so calls run in a worker thread to keep the
event loop free.
"""
from __future__ import annotations

import abc
import asyncio
import uuid
import structlog
from dataclasses import dataclass
from typing import Any, Optional

import stripe

from config.settings import PaymentConfig

logger = structlog.get_logger()


class PaymentError(Exception):
    """Raised when a checkout session cannot be created."""


@dataclass
class CheckoutSession:
    url: str
    session_id: str


class PaymentProvider(abc.ABC):
    """Abstract base for payment providers."""

    @abc.abstractmethod
    async def create_checkout_session(
        self,
        amount: float,
        metadata: dict[str, str],
        customer_email: Optional[str] = None,
        description: str = "",
        success_url: str = "",
        cancel_url: str = "",
    ) -> CheckoutSession:
        ...


class StripePaymentProvider(PaymentProvider):
    """Stripe Checkout in one-off payment mode."""

    def __init__(self, config: PaymentConfig):
        self.config = config

    def _create(self, params: dict[str, Any]):
        return stripe.checkout.Session.create(api_key=self.config.stripe_secret_key, **params)

    async def create_checkout_session(
        self,
        amount: float,
        metadata: dict[str, str],
        customer_email: Optional[str] = None,
        description: str = "",
        success_url: str = "",
        cancel_url: str = "",
    ) -> CheckoutSession:
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": self.config.currency,
                    "unit_amount": int(round(amount * 100)),
                    "product_data": {
                        "name": description or self.config.product_name,
                        "description": "Deposit payment for your bespoke wardrobe project",
                    },
                },
                "quantity": 1,
            }],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(self._create, params)
        except Exception as e:
            raise PaymentError(str(e)) from e

        logger.info("checkout_session_created", session_id=session.id, amount=amount)
        return CheckoutSession(url=session.url, session_id=session.id)


class MockPaymentProvider(PaymentProvider):
    """Records requests and hands back predictable URLs (or fails on demand)."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests: list[dict[str, Any]] = []

    async def create_checkout_session(
        self,
        amount: float,
        metadata: dict[str, str],
        customer_email: Optional[str] = None,
        description: str = "",
        success_url: str = "",
        cancel_url: str = "",
    ) -> CheckoutSession:
        self.requests.append({
            "amount": amount, "metadata": metadata,
            "customer_email": customer_email, "description": description,
        })
        if self.fail:
            raise PaymentError("mock payment provider failure")
        session_id = f"cs_test_{uuid.uuid4().hex[:12]}"
        return CheckoutSession(url=f"https://checkout.example.test/{session_id}", session_id=session_id)


def create_payment_provider(config: PaymentConfig) -> Optional[PaymentProvider]:
    """Stripe when a secret key is configured; otherwise None (placeholder links)."""
    if config.stripe_secret_key:
        return StripePaymentProvider(config)
    logger.warning("payments_not_configured", reason="no stripe secret key")
    return None
