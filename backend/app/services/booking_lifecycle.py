"""Booking status machine, pricing and the side effects tied to transitions.

Functions here mutate a :class:`Booking` in memory only. Persisting the result
and applying provider counters is the booking store's job, inside the same
transaction as the status write.
"""

import math
import secrets
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from app.models import Booking, Cancellation, Dispute, Pricing, Review
from app.services.errors import ConflictError, InvalidTransitionError, ValidationError

PLATFORM_FEE_RATE = 0.25
FRIEND_SHARE_RATE = 0.75

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"in-progress", "cancelled"}),
    "in-progress": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
    "disputed": frozenset(),
}

ACTIVE_STATUSES = frozenset({"confirmed", "in-progress"})
CANCELLABLE_STATUSES = frozenset({"pending", "confirmed"})


def duration_hours(start: datetime, end: datetime) -> int:
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        raise ValidationError("endTime must be after startTime")
    return math.ceil(seconds / 3600)


def compute_pricing(hourly_rate: float, hours: int) -> Pricing:
    subtotal = hourly_rate * hours
    platform_fee = subtotal * PLATFORM_FEE_RATE
    return Pricing(
        hourly_rate=hourly_rate,
        total_hours=hours,
        subtotal=subtotal,
        platform_fee=platform_fee,
        total_amount=subtotal + platform_fee,
        friend_earnings=subtotal * FRIEND_SHARE_RATE,
    )


def generate_safety_code() -> str:
    return str(1000 + secrets.randbelow(9000))


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def apply_transition(
    booking: Booking,
    requested: str,
    actor_id: str,
    now: datetime,
    reason: Optional[str] = None,
) -> str:
    """Move ``booking`` to ``requested`` and apply its payment side effects.

    Returns the previous status. Raises :class:`InvalidTransitionError` and
    leaves the booking untouched when the move is not in ``TRANSITIONS``.
    """
    current = booking.status
    if not can_transition(current, requested):
        raise InvalidTransitionError(current, requested)

    if requested == "confirmed":
        booking.payment.status = "held"
        booking.payment.paid_at = booking.payment.paid_at or now
    elif requested == "completed":
        booking.payment.status = "released"
    elif requested == "cancelled":
        refund = booking.pricing.total_amount
        booking.cancellation = Cancellation(
            cancelled_by=actor_id,
            reason=reason or "No reason provided",
            cancelled_at=now,
            refund_amount=refund,
        )
        booking.payment.status = "refunded"
        booking.payment.refunded_at = now
        booking.payment.refund_amount = refund

    booking.status = requested  # type: ignore[assignment]
    booking.updated_at = now
    return current


def open_dispute(booking: Booking, actor_id: str, reason: str, description: str, now: datetime) -> None:
    if booking.status != "completed":
        raise InvalidTransitionError(booking.status, "disputed")
    if booking.dispute is not None:
        raise ConflictError("Booking has already been disputed")
    booking.status = "disputed"
    booking.dispute = Dispute(
        disputed_by=actor_id,
        reason=reason,
        description=description,
        disputed_at=now,
        status="open",
    )
    booking.updated_at = now


def start_dispute_review(booking: Booking, now: datetime) -> None:
    dispute = booking.dispute
    if booking.status != "disputed" or dispute is None or dispute.status != "open":
        current = dispute.status if dispute else "none"
        raise InvalidTransitionError(current, "under-review")
    dispute.status = "under-review"
    booking.updated_at = now


def resolve_dispute(booking: Booking, resolution: str, refund_amount: float, now: datetime) -> None:
    dispute = booking.dispute
    if booking.status != "disputed" or dispute is None or dispute.status == "resolved":
        current = dispute.status if dispute else booking.status
        raise InvalidTransitionError(current, "resolved")
    if refund_amount > booking.pricing.total_amount:
        raise ValidationError("refundAmount cannot exceed the booking total")

    dispute.status = "resolved"
    dispute.resolution = resolution
    dispute.resolved_at = now
    if refund_amount > 0:
        dispute.refund_amount = refund_amount
        booking.status = "cancelled"
        booking.payment.status = "refunded"
        booking.payment.refunded_at = now
        booking.payment.refund_amount = refund_amount
    else:
        booking.status = "completed"
    booking.updated_at = now


def attach_review(booking: Booking, review: Review, by_requester: bool) -> None:
    if booking.status != "completed":
        raise ValidationError("Can only review completed bookings")
    if by_requester:
        if booking.review is not None:
            raise ConflictError("You have already reviewed this booking")
        booking.review = review
    else:
        if booking.friend_review is not None:
            raise ConflictError("You have already reviewed this booking")
        booking.friend_review = review
    booking.updated_at = review.created_at
