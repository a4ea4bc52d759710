import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from app.auth import require_actor
from app.models import (
    Actor,
    Booking,
    EarningsSummary,
    Envelope,
    PaymentConfirmRequest,
    PaymentIntent,
    PaymentIntentRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.booking_store import booking_store
from app.services.errors import MarketplaceError
from app.services.notification_store import notification_store
from app.services.payments import payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create-intent", response_model=Envelope[PaymentIntent])
def create_intent(payload: PaymentIntentRequest, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=booking_store.create_payment_intent(actor, payload.booking_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/confirm", response_model=Envelope[Booking])
def confirm_payment(payload: PaymentConfirmRequest, actor: Actor = Depends(require_actor)):
    try:
        booking = booking_store.confirm_payment(
            actor,
            payload.booking_id,
            intent_id=payload.intent_id,
            transaction_id=payload.transaction_id,
            signature=payload.signature,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_store.create(
        user_id=booking.friend_id,
        title="Booking confirmed",
        body="Payment received. Your booking is confirmed.",
        category="booking",
        deep_link=f"/bookings/{booking.id}",
    )
    return Envelope(data=booking)


def _payment_entity(event: Dict[str, Any]) -> Dict[str, Any]:
    node: Any = event
    for key in ("payload", "payment", "entity"):
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}



@router.post("/webhook", response_model=Envelope[Dict[str, bool]])
async def payment_webhook(request: Request, x_webhook_signature: Optional[str] = Header(default=None)):
    body = await request.body()
    try:
        event = payment_gateway.parse_webhook(body, x_webhook_signature)
    except MarketplaceError as exc:
        logger.warning("Rejected payment webhook: %s", exc)
        raise_http_error(exc)

    entity = _payment_entity(event)
    notes = entity.get("notes")
    booking_id = notes.get("bookingId") if isinstance(notes, dict) else None
    event_type = event.get("event")
    if event_type == "payment.captured" and booking_id:
        try:
            await run_in_threadpool(booking_store.mark_payment_captured, booking_id, str(entity.get("id", "")))
        except MarketplaceError as exc:
            raise_http_error(exc)
    elif event_type == "payment.failed" and booking_id:
        logger.warning("Payment failed for booking %s", booking_id)
    else:
        logger.info("Ignoring payment webhook event %s", event_type)
    return Envelope(data={"received": True})


@router.get("/earnings", response_model=Envelope[EarningsSummary])
def earnings(actor: Actor = Depends(require_actor)):
    return Envelope(data=booking_store.earnings(actor))
