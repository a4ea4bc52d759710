import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import ADMIN, FRIEND, REQUESTER, STRANGER, advance, booking_request

from app.models import Actor, ReviewRequest
from app.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PaymentVerificationError,
    ValidationError,
)


def _review(rating: int) -> ReviewRequest:
    return ReviewRequest(rating=rating, comment="", categories={"overall": rating})


def _confirm(stores, booking_id: str) -> None:
    intent = stores.bookings.create_payment_intent(REQUESTER, booking_id)
    signature = stores.gateway.sign(intent.intent_id, "txn_1")
    stores.bookings.confirm_payment(REQUESTER, booking_id, intent.intent_id, "txn_1", signature)


def test_create_booking_prices_from_package(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request(hours=3))
    assert booking.status == "pending"
    assert booking.duration == 3
    assert booking.pricing.hourly_rate == 150
    assert booking.pricing.total_amount == 562.5
    assert booking.pricing.friend_earnings == 337.5
    assert booking.payment.status == "pending"
    assert len(booking.safety_code) == 4


def test_create_booking_unknown_friend_or_package(stores):
    with pytest.raises(NotFoundError, match="Friend not found"):
        stores.bookings.create_booking(REQUESTER, booking_request(friend_id="nobody"))
    with pytest.raises(NotFoundError, match="Package not found"):
        stores.bookings.create_booking(REQUESTER, booking_request(package_id="pkg_missing"))


def test_only_participants_or_admin_can_read(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    assert stores.bookings.get_booking(FRIEND, booking.id).id == booking.id
    assert stores.bookings.get_booking(ADMIN, booking.id).id == booking.id
    with pytest.raises(ForbiddenError):
        stores.bookings.get_booking(STRANGER, booking.id)
    with pytest.raises(ForbiddenError):
        stores.bookings.update_status(STRANGER, booking.id, "confirmed")


def test_cancel_pending_booking_refunds_total(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    cancelled = stores.bookings.cancel_booking(REQUESTER, booking.id, None)
    assert cancelled.status == "cancelled"
    assert cancelled.cancellation.refund_amount == cancelled.pricing.total_amount
    assert cancelled.payment.status == "refunded"
    with pytest.raises(ValidationError, match="Cannot cancel booking at this stage"):
        stores.bookings.cancel_booking(REQUESTER, booking.id, None)


def test_cancel_after_payment_refunds_through_gateway(stores, monkeypatch):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    _confirm(stores, booking.id)
    refunds = []
    monkeypatch.setattr(stores.gateway, "refund", lambda txn, amount: refunds.append((txn, amount)) or "rf_test")

    cancelled = stores.bookings.cancel_booking(FRIEND, booking.id, "Fell ill")
    assert refunds == [("txn_1", booking.pricing.total_amount)]
    assert cancelled.payment.refund_id == "rf_test"
    assert cancelled.cancellation.cancelled_by == "friend_1"
    assert cancelled.cancellation.reason == "Fell ill"


def test_gateway_refund_failure_leaves_booking_unchanged(stores, monkeypatch):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    _confirm(stores, booking.id)

    def failing_refund(txn, amount):
        raise RuntimeError("gateway down")

    monkeypatch.setattr(stores.gateway, "refund", failing_refund)
    with pytest.raises(RuntimeError):
        stores.bookings.cancel_booking(REQUESTER, booking.id, None)
    reloaded = stores.bookings.get_booking(REQUESTER, booking.id)
    assert reloaded.status == "confirmed"
    assert reloaded.payment.status == "held"


def test_payment_confirmation_rejects_bad_signature(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    intent = stores.bookings.create_payment_intent(REQUESTER, booking.id)
    assert intent.amount == int(booking.pricing.total_amount * 100)
    with pytest.raises(PaymentVerificationError):
        stores.bookings.confirm_payment(REQUESTER, booking.id, intent.intent_id, "txn_1", "forged")
    assert stores.bookings.get_booking(REQUESTER, booking.id).status == "pending"

    _confirm(stores, booking.id)
    confirmed = stores.bookings.get_booking(REQUESTER, booking.id)
    assert confirmed.status == "confirmed"
    assert confirmed.payment.status == "held"
    assert confirmed.payment.transaction_id == "txn_1"


def test_only_requester_creates_payment_intent(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    with pytest.raises(ForbiddenError):
        stores.bookings.create_payment_intent(FRIEND, booking.id)


def test_completion_updates_provider_once(stores):
    before = stores.profiles.get_profile("fp_1")
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    advance(stores.bookings, booking.id, "confirmed", "in-progress", "completed")
    with pytest.raises(InvalidTransitionError):
        stores.bookings.update_status(FRIEND, booking.id, "completed")

    after = stores.profiles.get_profile("fp_1")
    assert after.total_bookings == before.total_bookings + 1
    assert after.total_earnings == before.total_earnings + booking.pricing.friend_earnings


def test_concurrent_completions_apply_earnings_once(stores):
    before = stores.profiles.get_profile("fp_1")
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    advance(stores.bookings, booking.id, "confirmed", "in-progress")
    barrier = threading.Barrier(2)
    completed = []
    rejected = []

    def complete() -> None:
        barrier.wait()
        try:
            completed.append(stores.bookings.update_status(FRIEND, booking.id, "completed"))
        except (InvalidTransitionError, ConflictError) as exc:
            rejected.append(exc)

    threads = [threading.Thread(target=complete) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(completed) == 1
    assert len(rejected) == 1
    after = stores.profiles.get_profile("fp_1")
    assert after.total_bookings == before.total_bookings + 1
    assert after.total_earnings == before.total_earnings + booking.pricing.friend_earnings
    assert stores.bookings.get_booking(REQUESTER, booking.id).status == "completed"


def test_stale_version_write_is_rejected(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    stale = stores.bookings.get_booking(REQUESTER, booking.id)
    stores.bookings.update_status(FRIEND, booking.id, "confirmed")

    with pytest.raises(ConflictError):
        with stores.documents.transaction() as conn:
            stores.bookings._save(conn, stale)
    assert stores.bookings.get_booking(REQUESTER, booking.id).status == "confirmed"


def test_requester_review_updates_running_means(stores):
    package_before = stores.profiles.get_profile("fp_1").find_package("pkg_1")
    user_before = stores.profiles.get_user("friend_1")
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    advance(stores.bookings, booking.id, "confirmed", "in-progress", "completed")

    stores.bookings.add_review(REQUESTER, booking.id, _review(1))

    package_after = stores.profiles.get_profile("fp_1").find_package("pkg_1")
    expected = (package_before.rating * package_before.review_count + 1) / (package_before.review_count + 1)
    assert package_after.review_count == package_before.review_count + 1
    assert package_after.rating == pytest.approx(expected)
    assert stores.profiles.get_user("friend_1").review_count == user_before.review_count + 1

    with pytest.raises(ConflictError):
        stores.bookings.add_review(REQUESTER, booking.id, _review(5))


def test_admin_cannot_review_or_message(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    with pytest.raises(ForbiddenError):
        stores.bookings.append_message(ADMIN, booking.id, "hello")
    advance(stores.bookings, booking.id, "confirmed", "in-progress", "completed")
    with pytest.raises(ForbiddenError):
        stores.bookings.add_review(ADMIN, booking.id, _review(3))


def test_concurrent_requester_and_provider_reviews_both_persist(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    advance(stores.bookings, booking.id, "confirmed", "in-progress", "completed")
    barrier = threading.Barrier(2)
    errors = []

    def submit(actor: Actor, rating: int) -> None:
        barrier.wait()
        try:
            stores.bookings.add_review(actor, booking.id, _review(rating))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [
        threading.Thread(target=submit, args=(REQUESTER, 5)),
        threading.Thread(target=submit, args=(FRIEND, 4)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    reloaded = stores.bookings.get_booking(REQUESTER, booking.id)
    assert reloaded.review.rating == 5
    assert reloaded.friend_review.rating == 4


def test_messages_unread_and_mark_read(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    stores.bookings.update_status(FRIEND, booking.id, "confirmed")
    stores.bookings.append_message(REQUESTER, booking.id, "Running 5 minutes late")
    stores.bookings.append_message(REQUESTER, booking.id, "At the gate now")
    with pytest.raises(ValidationError):
        stores.bookings.append_message(REQUESTER, booking.id, "   ")

    assert stores.bookings.total_unread(FRIEND) == 2
    assert stores.bookings.total_unread(REQUESTER) == 0
    conversations = stores.bookings.conversations(FRIEND)
    assert conversations[0].booking_id == booking.id
    assert conversations[0].other_person_id == "user_1"
    assert conversations[0].last_message.content == "At the gate now"

    assert stores.bookings.mark_messages_read(FRIEND, booking.id) == 2
    assert stores.bookings.total_unread(FRIEND) == 0


def test_check_ins_require_active_booking_but_sos_does_not(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    with pytest.raises(ValidationError):
        stores.bookings.append_check_in(REQUESTER, booking.id, "manual")
    updated, check_in = stores.bookings.append_check_in(REQUESTER, booking.id, "sos")
    assert check_in.is_emergency is True
    assert updated.check_ins[-1].id == check_in.id


def test_list_bookings_paginates_newest_first(stores):
    ids = [stores.bookings.create_booking(REQUESTER, booking_request()).id for _ in range(3)]
    page, total = stores.bookings.list_bookings(REQUESTER, role="user", page=1, limit=2)
    assert total == 3
    assert [b.id for b in page] == [ids[2], ids[1]]
    provider_view, provider_total = stores.bookings.list_bookings(FRIEND, role="friend")
    assert provider_total == 3
    assert {b.id for b in provider_view} == set(ids)
    with pytest.raises(ValidationError):
        stores.bookings.list_bookings(REQUESTER, role="owner")


def test_dispute_flow_with_refund(stores, monkeypatch):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    _confirm(stores, booking.id)
    advance(stores.bookings, booking.id, "in-progress", "completed")
    monkeypatch.setattr(stores.gateway, "refund", lambda txn, amount: "rf_dispute")

    disputed = stores.bookings.open_dispute(REQUESTER, booking.id, "no-show", "Left after ten minutes")
    assert disputed.status == "disputed"
    assert [b.id for b in stores.bookings.list_disputes(ADMIN)] == [booking.id]
    with pytest.raises(ForbiddenError):
        stores.bookings.resolve_dispute(REQUESTER, booking.id, "self-serve", 100)

    stores.bookings.review_dispute(ADMIN, booking.id)
    resolved = stores.bookings.resolve_dispute(ADMIN, booking.id, "Partial refund", 200)
    assert resolved.status == "cancelled"
    assert resolved.dispute.status == "resolved"
    assert resolved.payment.refund_id == "rf_dispute"
    assert stores.bookings.list_disputes(ADMIN) == []


def test_earnings_summary_counts_released_bookings(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request(hours=2))
    advance(stores.bookings, booking.id, "confirmed", "in-progress", "completed")
    summary = stores.bookings.earnings(FRIEND)
    assert summary.total_bookings == 1
    assert summary.total_earnings == booking.pricing.friend_earnings
    assert summary.pending_earnings == 0
