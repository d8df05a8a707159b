"""
Stripe payment gateway adapter.

The Stripe SDK is synchronous; every call is pushed to a worker thread so it
does not block the event loop.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

import stripe

from portal.core.config import settings
from portal.core.exceptions import ExternalServiceError, PaymentSetupFailedError, SignatureInvalidError
from portal.core.logging import get_structlog_logger
from portal.services.pricing import money

logger = get_structlog_logger(__name__)

PAID_STATUSES = ("paid", "no_payment_required")

# Stripe rejects metadata values longer than this
METADATA_VALUE_LIMIT = 500

LOCK_LABELS = {
    "temporary-24h": "24 hour lock",
    "temporary-1week": "1 week lock",
    "permanent": "Permanent lock",
}


def to_cents(amount: Decimal) -> int:
    return int(money(amount) * 100)


def from_cents(amount: Optional[int]) -> Optional[Decimal]:
    if amount is None:
        return None
    return money(Decimal(amount) / 100)


@dataclass(frozen=True)
class DiscountInfo:
    discount_type: str
    amount: Decimal


@dataclass(frozen=True)
class CheckoutSessionInfo:
    session_id: str
    redirect_url: str
    amount_total: Optional[Decimal] = None
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    paid: bool
    status: Optional[str]
    payment_id: Optional[str]
    customer_id: Optional[str]
    amount_total: Optional[Decimal]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CouponInfo:
    id: str
    name: Optional[str]
    percent_off: Optional[float]
    amount_off: Optional[Decimal]
    currency: Optional[str]
    valid: bool


def build_metadata(
    dealer_id: str,
    lead_ids: Sequence[str],
    unit_price: Decimal,
    lock_type: Optional[str],
    discount: Optional[DiscountInfo],
) -> Dict[str, str]:
    """Checkout metadata; used to rebuild the order if the pending record is lost."""
    metadata = {
        "dealer_id": dealer_id,
        "kind": "lock" if lock_type else "purchase",
        "lock_type": lock_type or "",
        "unit_price": str(money(unit_price)),
        "has_discount": "true" if discount else "false",
        "discount_type": discount.discount_type if discount else "",
        "discount_amount": str(money(discount.amount)) if discount else "0.00",
    }
    application_ids = ",".join(lead_ids)
    if len(application_ids) <= METADATA_VALUE_LIMIT:
        metadata["application_ids"] = application_ids
    else:
        logger.warning("stripe.metadata_truncated", dealer_id=dealer_id, lead_count=len(lead_ids))
    return metadata


def _object_id(value: Any) -> Optional[str]:
    """Stripe returns either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeGateway:
    """Creates checkout sessions and verifies webhook events."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.currency = currency or settings.stripe_currency

        if not self.secret_key:
            logger.warning("stripe.not_configured")

        stripe.api_key = self.secret_key
        stripe.api_version = settings.stripe_api_version

    async def create_checkout_session(
        self,
        dealer_id: str,
        lead_ids: Sequence[str],
        unit_price: Decimal,
        lock_type: Optional[str] = None,
        discount: Optional[DiscountInfo] = None,
        line_prices: Optional[Mapping[str, Decimal]] = None,
        expires_in_minutes: Optional[int] = None,
        coupon_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionInfo:
        """Create a one-off payment session with one line item per lead."""
        if not self.secret_key:
            raise PaymentSetupFailedError("Payments are not configured", details={"reason": "missing_secret_key"})

        line_prices = line_prices or {}
        product_name = LOCK_LABELS.get(lock_type, "Application lock") if lock_type else "Application purchase"
        line_items = [
            {
                "price_data": {
                    "currency": self.currency,
                    "unit_amount": to_cents(line_prices.get(lead_id, unit_price)),
                    "product_data": {"name": f"{product_name} #{lead_id[:8]}"},
                },
                "quantity": 1,
            }
            for lead_id in lead_ids
        ]

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": settings.checkout_success_url,
            "cancel_url": settings.checkout_cancel_url,
            "client_reference_id": dealer_id,
            "metadata": build_metadata(dealer_id, lead_ids, unit_price, lock_type, discount),
        }
        if expires_in_minutes:
            params["expires_at"] = int(time.time()) + expires_in_minutes * 60
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            logger.error(
                "stripe.checkout_create_failed",
                dealer_id=dealer_id,
                lead_count=len(lead_ids),
                error=str(e),
            )
            raise PaymentSetupFailedError(
                details={"stripe_error": getattr(e, "user_message", None) or str(e)},
            ) from e

        logger.info(
            "stripe.checkout_created",
            session_id=session.id,
            dealer_id=dealer_id,
            lead_count=len(lead_ids),
            lock_type=lock_type,
        )
        return CheckoutSessionInfo(
            session_id=session.id,
            redirect_url=session.url,
            amount_total=from_cents(getattr(session, "amount_total", None)),
            expires_at=getattr(session, "expires_at", None),
        )

    async def complete_session(self, session_id: str) -> SessionStatus:
        """Fetch a session to confirm payment from the client-side return path."""
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
        except stripe.StripeError as e:
            logger.error("stripe.checkout_retrieve_failed", session_id=session_id, error=str(e))
            raise ExternalServiceError(
                "Unable to confirm payment",
                code="payment_lookup_failed",
                details={"session_id": session_id},
            ) from e

        return SessionStatus(
            session_id=session.id,
            paid=session.payment_status in PAID_STATUSES,
            status=session.status,
            payment_id=_object_id(session.payment_intent),
            customer_id=_object_id(session.customer),
            amount_total=from_cents(session.amount_total),
            metadata=dict(session.metadata or {}),
        )

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header and return the decoded event."""
        if not self.webhook_secret:
            logger.error("stripe.webhook_secret_missing")
            raise SignatureInvalidError("Webhook verification is not configured")
        if not signature:
            raise SignatureInvalidError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret)
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe.signature_invalid", error=str(e))
            raise SignatureInvalidError() from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SignatureInvalidError("Malformed webhook payload") from e

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise SignatureInvalidError("Malformed webhook payload")
        return event

    async def list_coupons(self, limit: int = 100) -> List[CouponInfo]:
        try:
            coupons = await asyncio.to_thread(stripe.Coupon.list, limit=limit)
        except stripe.StripeError as e:
            logger.error("stripe.coupon_list_failed", error=str(e))
            raise ExternalServiceError("Unable to list coupons", code="coupon_lookup_failed") from e

        return [
            CouponInfo(
                id=coupon.id,
                name=getattr(coupon, "name", None),
                percent_off=getattr(coupon, "percent_off", None),
                amount_off=from_cents(getattr(coupon, "amount_off", None)),
                currency=getattr(coupon, "currency", None),
                valid=bool(getattr(coupon, "valid", False)),
            )
            for coupon in coupons.data
        ]

    async def expire_session(self, session_id: str) -> None:
        try:
            await asyncio.to_thread(stripe.checkout.Session.expire, session_id)
        except stripe.StripeError as e:
            logger.warning("stripe.checkout_expire_failed", session_id=session_id, error=str(e))
            raise ExternalServiceError("Unable to expire checkout", code="payment_expire_failed") from e
        logger.info("stripe.checkout_expired", session_id=session_id)


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency returning the shared gateway."""
    global _gateway

    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
