from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.exceptions import BaseAPIException, PartialReconciliationFailure, ValidationError
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.db.session import get_session
from portal.services.payment_gateway import PAID_STATUSES, StripeGateway, get_payment_gateway
from portal.services.reconciliation import mark_expired, reconcile_checkout, register_event

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

PAYMENT_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)
EXPIRY_EVENTS = ("checkout.session.expired",)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    event_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


def _ref(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


async def process_stripe_event(session: AsyncSession, event_type: str, obj: Dict[str, Any]) -> str:
    """Apply one verified event and return a short outcome label."""
    session_id = obj.get("id")

    if event_type in EXPIRY_EVENTS:
        expired = await mark_expired(session, session_id)
        return "expired" if expired else "ignored"

    if obj.get("payment_status") not in PAID_STATUSES:
        # Delayed payment methods report completion before the money arrives
        logger.info("webhook.payment_pending", session_id=session_id, payment_status=obj.get("payment_status"))
        return "pending"

    report = await reconcile_checkout(
        session,
        session_id,
        payment_id=_ref(obj.get("payment_intent")),
        customer_id=_ref(obj.get("customer")),
        metadata=obj.get("metadata") or {},
    )
    report.raise_for_failures()
    return report.status


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """
    Receive Stripe events.

    Signature failures are rejected with 400. Once an event is verified the
    response is always 2xx: processing problems are logged and left for the
    reconciliation sweep, since a Stripe retry would hit the duplicate guard.
    """
    body = await request.body()
    if len(body) > settings.webhook_max_content_size:
        raise ValidationError("Webhook payload too large", code="payload_too_large")

    event = gateway.verify_event(body, stripe_signature)
    event_id = event["id"]
    event_type = event["type"]
    obj = (event.get("data") or {}).get("object") or {}

    logger.info("webhook.received", event_id=event_id, event_type=event_type, session_id=obj.get("id"))

    if event_type not in PAYMENT_EVENTS + EXPIRY_EVENTS or not obj.get("id"):
        return WebhookResponse(success=True, message="ignored", event_id=event_id)

    if not await register_event(session, event_id, event_type, obj.get("id")):
        return WebhookResponse(success=True, message="duplicate", event_id=event_id)

    try:
        outcome = await asyncio.wait_for(
            process_stripe_event(session, event_type, obj),
            timeout=settings.webhook_processing_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            "webhook.processing_timeout",
            event_id=event_id,
            session_id=obj.get("id"),
            timeout=settings.webhook_processing_timeout_seconds,
        )
        return WebhookResponse(success=True, message="deferred", event_id=event_id)
    except PartialReconciliationFailure as e:
        logger.error(
            "webhook.partial_reconciliation",
            event_id=event_id,
            session_id=e.session_id,
            failed_lead_ids=e.failed_lead_ids,
            details=e.details,
        )
        return WebhookResponse(success=True, message="partial", event_id=event_id)
    except BaseAPIException as e:
        logger.error("webhook.processing_failed", event_id=event_id, code=e.code, error=e.message)
        return WebhookResponse(success=True, message="deferred", event_id=event_id)

    logger.info("webhook.processed", event_id=event_id, event_type=event_type, outcome=outcome)
    return WebhookResponse(success=True, message=outcome, event_id=event_id)
