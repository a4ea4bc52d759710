from typing import List

from fastapi import APIRouter, Depends, Query

from app.auth import require_admin
from app.models import (
    Actor,
    Booking,
    DisputeResolveRequest,
    Envelope,
    ProviderProfile,
    VerificationUpdateRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.booking_store import booking_store
from app.services.errors import MarketplaceError
from app.services.notification_store import notification_store
from app.services.profile_store import profile_store

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/disputes", response_model=Envelope[List[Booking]])
def list_disputes(
    status: str = Query(default="open", pattern="^(open|under-review|resolved)$"),
    actor: Actor = Depends(require_admin),
):
    try:
        return Envelope(data=booking_store.list_disputes(actor, status=status))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.put("/disputes/{booking_id}/review", response_model=Envelope[Booking])
def review_dispute(booking_id: str, actor: Actor = Depends(require_admin)):
    try:
        return Envelope(data=booking_store.review_dispute(actor, booking_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.put("/disputes/{booking_id}/resolve", response_model=Envelope[Booking])
def resolve_dispute(
    booking_id: str,
    payload: DisputeResolveRequest,
    actor: Actor = Depends(require_admin),
):
    try:
        booking = booking_store.resolve_dispute(actor, booking_id, payload.resolution, payload.refund_amount)
    except MarketplaceError as exc:
        raise_http_error(exc)
    for user_id in (booking.user_id, booking.friend_id):
        notification_store.create(
            user_id=user_id,
            title="Dispute resolved",
            body=payload.resolution,
            category="booking",
            deep_link=f"/bookings/{booking.id}",
        )
    return Envelope(data=booking)


@router.put("/verifications/{profile_id}", response_model=Envelope[ProviderProfile])
def update_verification(
    profile_id: str,
    payload: VerificationUpdateRequest,
    actor: Actor = Depends(require_admin),
):
    try:
        return Envelope(data=profile_store.set_verification(profile_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)
