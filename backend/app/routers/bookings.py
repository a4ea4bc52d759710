from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from app.auth import require_actor
from app.models import (
    Actor,
    Booking,
    BookingCreateRequest,
    BookingStatusUpdateRequest,
    CancelRequest,
    CheckIn,
    CheckInRequest,
    DisputeRequest,
    Envelope,
    Message,
    MessageCreateRequest,
    PagedEnvelope,
    Pagination,
    Review,
    ReviewRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.booking_store import booking_store, page_count
from app.services.errors import MarketplaceError
from app.services.messaging import messaging_service
from app.services.notification_store import notification_store
from app.services.profile_store import profile_store

router = APIRouter(prefix="/bookings", tags=["bookings"])

STATUS_MESSAGES = {
    "confirmed": "Your booking has been confirmed",
    "in-progress": "Your booking has started",
    "completed": "Your booking is complete. Leave a review!",
    "cancelled": "Your booking was cancelled",
}


def _other_party(booking: Booking, actor: Actor) -> str:
    return booking.friend_id if actor.user_id == booking.user_id else booking.user_id


def _notify_status(booking: Booking, actor: Actor) -> None:
    body = STATUS_MESSAGES.get(booking.status)
    if not body:
        return
    deep_link = f"/bookings/{booking.id}"
    notification_store.create(_other_party(booking, actor), "Booking update", body, "booking", deep_link)
    if actor.is_admin:
        notification_store.create(booking.user_id, "Booking update", body, "booking", deep_link)


@router.get("", response_model=PagedEnvelope[Booking])
def list_bookings(
    role: str = Query(default="user"),
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    actor: Actor = Depends(require_actor),
):
    try:
        bookings, total = booking_store.list_bookings(actor, role=role, status=status, page=page, limit=limit)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return PagedEnvelope(
        data=bookings,
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/{booking_id}", response_model=Envelope[Booking])
def get_booking(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=booking_store.get_booking(actor, booking_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("", response_model=Envelope[Booking], status_code=201)
def create_booking(payload: BookingCreateRequest, actor: Actor = Depends(require_actor)):
    try:
        booking = booking_store.create_booking(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    requester = profile_store.get_user(actor.user_id)
    name = requester.first_name if requester else "Someone"
    notification_store.create(
        user_id=booking.friend_id,
        title="New booking request",
        body=f"{name} wants to book you for {booking.duration}h",
        category="booking",
        deep_link=f"/bookings/{booking.id}",
    )
    return Envelope(data=booking)


@router.put("/{booking_id}/status", response_model=Envelope[Booking])
def update_status(
    booking_id: str,
    payload: BookingStatusUpdateRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        booking = booking_store.update_status(actor, booking_id, payload.status)
    except MarketplaceError as exc:
        raise_http_error(exc)
    _notify_status(booking, actor)
    return Envelope(data=booking)


@router.put("/{booking_id}/cancel", response_model=Envelope[Booking])
def cancel_booking(
    booking_id: str,
    payload: Optional[CancelRequest] = None,
    actor: Actor = Depends(require_actor),
):
    try:
        booking = booking_store.cancel_booking(actor, booking_id, payload.reason if payload else None)
    except MarketplaceError as exc:
        raise_http_error(exc)
    _notify_status(booking, actor)
    return Envelope(data=booking)


@router.post("/{booking_id}/checkin", response_model=Envelope[CheckIn], status_code=201)
async def check_in(
    booking_id: str,
    payload: CheckInRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
):
    registry = getattr(request.app.state, "registry", None)
    try:
        return Envelope(data=await messaging_service.check_in(registry, actor, booking_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{booking_id}/messages", response_model=Envelope[List[Message]])
def list_messages(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        booking = booking_store.get_booking(actor, booking_id, participants_only=True)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data=booking.messages)


@router.post("/{booking_id}/messages", response_model=Envelope[Message], status_code=201)
async def send_message(
    booking_id: str,
    payload: MessageCreateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
):
    registry = getattr(request.app.state, "registry", None)
    try:
        message = await messaging_service.send_message(registry, actor, booking_id, payload.content, payload.type)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data=message)


@router.post("/{booking_id}/review", response_model=Envelope[Review], status_code=201)
def add_review(booking_id: str, payload: ReviewRequest, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=booking_store.add_review(actor, booking_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{booking_id}/dispute", response_model=Envelope[Booking])
def open_dispute(booking_id: str, payload: DisputeRequest, actor: Actor = Depends(require_actor)):
    try:
        booking = booking_store.open_dispute(actor, booking_id, payload.reason, payload.description)
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_store.create_many(
        profile_store.list_staff_user_ids(),
        title="New dispute",
        body=f"Booking {booking.id}: {payload.reason}",
        category="system",
        deep_link=f"/admin/disputes/{booking.id}",
    )
    return Envelope(data=booking)
