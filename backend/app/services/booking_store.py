import logging
import math
import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from app.models import (
    Actor,
    Booking,
    BookingCreateRequest,
    CheckIn,
    Conversation,
    EarningsSummary,
    GeoPoint,
    Message,
    Payment,
    PaymentIntent,
    Review,
    ReviewRequest,
)
from app.services import booking_lifecycle as lifecycle
from app.services.document_store import DocumentStore, document_store
from app.services.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from app.services.payments import PaymentGateway, payment_gateway
from app.services.profile_store import ProfileStore, profile_store

logger = logging.getLogger(__name__)

BOOKINGS = "bookings"
CONVERSATION_STATUSES = ("confirmed", "in-progress", "completed")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BookingStore:
    """Booking documents and every mutation of them.

    Each mutation loads the booking, checks the caller, applies the change and
    writes it back with a version compare-and-swap, all inside one transaction.
    Provider counters and ratings touched by a transition are written in that
    same transaction.
    """

    def __init__(self, documents: DocumentStore, profiles: ProfileStore, gateway: PaymentGateway) -> None:
        self.documents = documents
        self.profiles = profiles
        self.gateway = gateway

    # ------------------------------------------------------------ internals

    def _load(self, conn: sqlite3.Connection, booking_id: str) -> Booking:
        row = self.documents.fetch(conn, BOOKINGS, booking_id)
        if not row:
            raise NotFoundError("Booking not found")
        doc, version = row
        booking = Booking.model_validate(doc)
        booking.version = version
        return booking

    def _save(self, conn: sqlite3.Connection, booking: Booking) -> None:
        doc = booking.model_dump(mode="json", by_alias=True)
        booking.version = self.documents.replace(conn, BOOKINGS, doc, booking.version)

    def _authorize(self, booking: Booking, actor: Actor, participants_only: bool = False) -> None:
        if booking.is_participant(actor.user_id):
            return
        if actor.is_admin and not participants_only:
            return
        raise ForbiddenError("Not authorized for this booking")

    def _mutate(
        self,
        booking_id: str,
        actor: Actor,
        change: Callable[[sqlite3.Connection, Booking], None],
        participants_only: bool = False,
    ) -> Booking:
        with self.documents.transaction() as conn:
            booking = self._load(conn, booking_id)
            self._authorize(booking, actor, participants_only=participants_only)
            change(conn, booking)
            self._save(conn, booking)
        return booking

    def _refund_if_captured(self, booking: Booking, amount: float) -> None:
        payment = booking.payment
        if payment.status == "pending" or not payment.transaction_id or amount <= 0:
            return
        payment.refund_id = self.gateway.refund(payment.transaction_id, amount)

    def _transition(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        requested: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> None:
        if not lifecycle.can_transition(booking.status, requested):
            raise InvalidTransitionError(booking.status, requested)
        if requested == "cancelled":
            # Gateway first: a failed refund must leave the booking as it was.
            self._refund_if_captured(booking, booking.pricing.total_amount)
        previous = lifecycle.apply_transition(booking, requested, actor.user_id, _now(), reason=reason)
        if requested == "completed":
            self.profiles.record_completion(conn, booking.friend_id, booking.pricing.friend_earnings)
        logger.info("Booking %s: %s -> %s by %s", booking.id, previous, requested, actor.user_id)

    # ------------------------------------------------------------ lifecycle

    def create_booking(self, actor: Actor, request: BookingCreateRequest) -> Booking:
        hours = lifecycle.duration_hours(request.start_time, request.end_time)
        now = _now()
        with self.documents.transaction() as conn:
            _, package = self.profiles.load_friend_and_package(conn, request.friend_id, request.package_id)
            if request.friend_id == actor.user_id:
                raise ValidationError("You cannot book yourself")
            booking = Booking(
                id=f"bk_{uuid4().hex[:12]}",
                user_id=actor.user_id,
                friend_id=request.friend_id,
                package_id=package.id,
                status="pending",
                situation=request.situation,
                start_time=request.start_time,
                end_time=request.end_time,
                duration=hours,
                location=request.location,
                pricing=lifecycle.compute_pricing(package.hourly_rate, hours),
                payment=Payment(status="pending"),
                safety_code=lifecycle.generate_safety_code(),
                created_at=now,
                updated_at=now,
            )
            self.documents.insert(conn, BOOKINGS, booking.model_dump(mode="json", by_alias=True))
        logger.info("Booking %s created: %s -> %s (%sh)", booking.id, actor.user_id, request.friend_id, hours)
        return booking

    def get_booking(self, actor: Actor, booking_id: str, participants_only: bool = False) -> Booking:
        with self.documents.transaction() as conn:
            booking = self._load(conn, booking_id)
        self._authorize(booking, actor, participants_only=participants_only)
        return booking

    def list_bookings(
        self,
        actor: Actor,
        role: str = "user",
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Booking], int]:
        if role not in {"user", "friend"}:
            raise ValidationError("role must be 'user' or 'friend'")
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        column = "friend_id" if role == "friend" else "user_id"
        where = f"{column} = ?"
        params: List[str] = [actor.user_id]
        if status:
            where += " AND status = ?"
            params.append(status)
        with self.documents.transaction() as conn:
            total = self.documents.count(conn, BOOKINGS, where, params)
            rows = self.documents.find(
                conn,
                BOOKINGS,
                where,
                params,
                order_by="created_at DESC, rowid DESC",
                limit=limit,
                offset=(page - 1) * limit,
            )
        return [self._from_row(doc, version) for doc, version in rows], total

    def update_status(self, actor: Actor, booking_id: str, status: str, reason: Optional[str] = None) -> Booking:
        return self._mutate(booking_id, actor, lambda conn, b: self._transition(conn, b, status, actor, reason=reason))

    def cancel_booking(self, actor: Actor, booking_id: str, reason: Optional[str]) -> Booking:
        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            if booking.status not in lifecycle.CANCELLABLE_STATUSES:
                raise ValidationError("Cannot cancel booking at this stage")
            self._transition(conn, booking, "cancelled", actor, reason=reason)

        return self._mutate(booking_id, actor, change)

    # ------------------------------------------------------------ payments

    def create_payment_intent(self, actor: Actor, booking_id: str) -> PaymentIntent:
        intent_holder: List[PaymentIntent] = []

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            if booking.user_id != actor.user_id:
                raise ForbiddenError("Only the requester can pay for this booking")
            if booking.status != "pending":
                raise ValidationError("Payment can only be started for pending bookings")
            intent = self.gateway.create_intent(booking.id, booking.pricing.total_amount)
            booking.payment.gateway = intent.gateway
            booking.payment.intent_id = intent.intent_id
            booking.updated_at = _now()
            intent_holder.append(intent)

        self._mutate(booking_id, actor, change)
        return intent_holder[0]

    def confirm_payment(
        self,
        actor: Actor,
        booking_id: str,
        intent_id: str,
        transaction_id: str,
        signature: str,
    ) -> Booking:
        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            if booking.payment.intent_id != intent_id:
                raise ValidationError("Payment intent does not belong to this booking")
            self.gateway.confirm(intent_id, transaction_id, signature)
            booking.payment.transaction_id = transaction_id
            self._transition(conn, booking, "confirmed", actor)

        return self._mutate(booking_id, actor, change)

    def mark_payment_captured(self, booking_id: str, transaction_id: str) -> Optional[Booking]:
        """Webhook path: confirm a still-pending booking once the gateway reports capture."""
        system = Actor(user_id="system:payments", role="admin")

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            booking.payment.transaction_id = booking.payment.transaction_id or transaction_id
            if booking.status == "pending":
                self._transition(conn, booking, "confirmed", system)

        try:
            return self._mutate(booking_id, system, change)
        except NotFoundError:
            logger.warning("Payment captured for unknown booking %s", booking_id)
            return None

    def earnings(self, actor: Actor) -> EarningsSummary:
        with self.documents.transaction() as conn:
            rows = self.documents.find(
                conn,
                BOOKINGS,
                "friend_id = ? AND status = 'completed'",
                (actor.user_id,),
                order_by="created_at DESC, rowid DESC",
            )
        bookings = [self._from_row(doc, version) for doc, version in rows]
        released = [b for b in bookings if b.payment.status == "released"]
        held = [b for b in bookings if b.payment.status == "held"]
        return EarningsSummary(
            total_earnings=sum(b.pricing.friend_earnings for b in released),
            pending_earnings=sum(b.pricing.friend_earnings for b in held),
            total_bookings=len(released),
            recent_earnings=[
                {"bookingId": b.id, "amount": b.pricing.friend_earnings, "date": b.created_at.isoformat()}
                for b in released[:5]
            ],
        )

    # ------------------------------------------------------------ reviews & disputes

    def add_review(self, actor: Actor, booking_id: str, request: ReviewRequest) -> Review:
        review = Review(
            reviewer_id=actor.user_id,
            rating=request.rating,
            comment=request.comment,
            categories=request.categories,
            created_at=_now(),
        )

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            by_requester = booking.user_id == actor.user_id
            lifecycle.attach_review(booking, review, by_requester=by_requester)
            if by_requester:
                self.profiles.record_review(conn, booking.friend_id, booking.package_id, review.rating)

        self._mutate(booking_id, actor, change, participants_only=True)
        return review

    def open_dispute(self, actor: Actor, booking_id: str, reason: str, description: str) -> Booking:
        return self._mutate(
            booking_id,
            actor,
            lambda conn, b: lifecycle.open_dispute(b, actor.user_id, reason, description, _now()),
        )

    def review_dispute(self, actor: Actor, booking_id: str) -> Booking:
        if not actor.is_admin:
            raise ForbiddenError("Not authorized as admin")
        return self._mutate(booking_id, actor, lambda conn, b: lifecycle.start_dispute_review(b, _now()))

    def resolve_dispute(self, actor: Actor, booking_id: str, resolution: str, refund_amount: float) -> Booking:
        if not actor.is_admin:
            raise ForbiddenError("Not authorized as admin")

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            lifecycle.resolve_dispute(booking, resolution, refund_amount, _now())
            if refund_amount > 0 and booking.payment.transaction_id:
                booking.payment.refund_id = self.gateway.refund(booking.payment.transaction_id, refund_amount)
            logger.info("Dispute on %s resolved, refund=%.2f", booking.id, refund_amount)

        return self._mutate(booking_id, actor, change)

    def list_disputes(self, actor: Actor, status: str = "open") -> List[Booking]:
        if not actor.is_staff:
            raise ForbiddenError("Not authorized as admin")
        with self.documents.transaction() as conn:
            rows = self.documents.find(conn, BOOKINGS, "status IN ('disputed', 'cancelled', 'completed')")
        bookings = [self._from_row(doc, version) for doc, version in rows]
        result = [b for b in bookings if b.dispute is not None and b.dispute.status == status]
        result.sort(key=lambda b: b.dispute.disputed_at if b.dispute else b.created_at, reverse=True)
        return result

    def recent_reviews_for_friend(self, friend_user_id: str, limit: int = 5) -> List[Review]:
        with self.documents.transaction() as conn:
            rows = self.documents.find(
                conn,
                BOOKINGS,
                "friend_id = ?",
                (friend_user_id,),
                order_by="created_at DESC, rowid DESC",
            )
        reviews = [self._from_row(doc, version).review for doc, version in rows]
        return [review for review in reviews if review is not None][:limit]

    # ------------------------------------------------------------ check-ins & messages

    def append_check_in(
        self,
        actor: Actor,
        booking_id: str,
        check_in_type: str,
        location: Optional[GeoPoint] = None,
        notes: Optional[str] = None,
        is_emergency: bool = False,
    ) -> Tuple[Booking, CheckIn]:
        check_in = CheckIn(
            id=f"ci_{uuid4().hex[:12]}",
            type=check_in_type,  # type: ignore[arg-type]
            timestamp=_now(),
            location=location,
            is_emergency=is_emergency or check_in_type == "sos",
            notes=notes,
        )

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            # SOS is accepted in any state; routine check-ins only while the booking is live.
            if check_in.type != "sos" and booking.status not in lifecycle.ACTIVE_STATUSES:
                raise ValidationError("Check-ins are only accepted for confirmed or in-progress bookings")
            booking.check_ins.append(check_in)
            booking.updated_at = check_in.timestamp

        booking = self._mutate(booking_id, actor, change, participants_only=check_in.type == "sos")
        return booking, check_in

    def append_message(self, actor: Actor, booking_id: str, content: str, message_type: str = "text") -> Message:
        content = content.strip()
        if not content:
            raise ValidationError("Message content is required")
        message = Message(
            id=f"msg_{uuid4().hex[:12]}",
            sender_id=actor.user_id,
            content=content,
            type=message_type,  # type: ignore[arg-type]
            timestamp=_now(),
            is_read=False,
        )

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            booking.messages.append(message)
            booking.updated_at = message.timestamp

        self._mutate(booking_id, actor, change, participants_only=True)
        return message

    def mark_messages_read(self, actor: Actor, booking_id: str) -> int:
        marked: List[int] = []

        def change(conn: sqlite3.Connection, booking: Booking) -> None:
            count = 0
            for message in booking.messages:
                if message.sender_id != actor.user_id and not message.is_read:
                    message.is_read = True
                    count += 1
            marked.append(count)

        self._mutate(booking_id, actor, change, participants_only=True)
        return marked[0]

    def _participant_bookings(self, user_id: str, statuses: Optional[Tuple[str, ...]] = None) -> List[Booking]:
        where = "(user_id = ? OR friend_id = ?)"
        params: List[str] = [user_id, user_id]
        if statuses:
            where += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        with self.documents.transaction() as conn:
            rows = self.documents.find(conn, BOOKINGS, where, params, order_by="updated_at DESC")
        return [self._from_row(doc, version) for doc, version in rows]

    def conversations(self, actor: Actor) -> List[Conversation]:
        result = []
        for booking in self._participant_bookings(actor.user_id, CONVERSATION_STATUSES):
            other = booking.friend_id if booking.user_id == actor.user_id else booking.user_id
            result.append(
                Conversation(
                    booking_id=booking.id,
                    other_person_id=other,
                    status=booking.status,
                    start_time=booking.start_time,
                    unread_count=unread_count(booking, actor.user_id),
                    last_message=booking.messages[-1] if booking.messages else None,
                )
            )
        return result

    def total_unread(self, actor: Actor) -> int:
        return sum(unread_count(b, actor.user_id) for b in self._participant_bookings(actor.user_id))

    def list_active_bookings(self) -> List[Booking]:
        statuses = sorted(lifecycle.ACTIVE_STATUSES)
        with self.documents.transaction() as conn:
            rows = self.documents.find(
                conn,
                BOOKINGS,
                f"status IN ({', '.join('?' for _ in statuses)})",
                statuses,
            )
        return [self._from_row(doc, version) for doc, version in rows]

    @staticmethod
    def _from_row(doc: dict, version: int) -> Booking:
        booking = Booking.model_validate(doc)
        booking.version = version
        return booking


def unread_count(booking: Booking, user_id: str) -> int:
    return sum(1 for m in booking.messages if m.sender_id != user_id and not m.is_read)


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


booking_store = BookingStore(document_store, profile_store, payment_gateway)
