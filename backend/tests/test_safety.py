import logging
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import ADMIN, FRIEND, REQUESTER, STRANGER, booking_request

from app.models import Booking, CheckIn, CheckInRequest, EmergencyContact, GeoPoint
from app.services import safety_alerts as safety_alerts_module
from app.services.booking_lifecycle import compute_pricing
from app.services.errors import ForbiddenError, ValidationError
from app.services.notification_store import NotificationStore
from app.services.safety import SafetyMonitor, check_in_status, is_overdue, safety_status
from app.services.safety_alerts import SafetyAlertDispatcher

T = datetime(2026, 11, 20, 19, 0, tzinfo=timezone.utc)


class _SilentSender:
    def send_notification(self, tokens, title, body, data, urgent=False):
        return []


class _RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def dispatch(self, booking, check_in, reporter_id, staff_user_ids, emergency_contact=None):
        self.calls.append((booking.id, reporter_id, list(staff_user_ids), emergency_contact))
        return {}


class _BrokenDispatcher:
    def dispatch(self, *args, **kwargs):
        raise RuntimeError("notification backend down")


def _booking_with(check_ins) -> Booking:
    return Booking(
        id="bk_safety",
        user_id="user_1",
        friend_id="friend_1",
        package_id="pkg_1",
        status="in-progress",
        situation={"description": "dinner", "category": "social"},
        start_time=T,
        end_time=T + timedelta(hours=2),
        duration=2,
        location={"address": "Church Street"},
        pricing=compute_pricing(60, 2),
        safety_code="0420",
        check_ins=check_ins,
        created_at=T,
        updated_at=T,
    )


def _check_in(check_in_type="manual", at=T) -> CheckIn:
    return CheckIn(id=f"ci_{check_in_type}_{at.minute}", type=check_in_type, timestamp=at)


def _monitor(stores, dispatcher) -> SafetyMonitor:
    return SafetyMonitor(stores.bookings, stores.profiles, dispatcher)


def test_overdue_only_after_thirty_minutes():
    booking = _booking_with([_check_in()])
    assert not is_overdue(booking, T + timedelta(minutes=29))
    assert not is_overdue(booking, T + timedelta(minutes=30))
    assert is_overdue(booking, T + timedelta(minutes=31))


def test_no_check_ins_is_never_overdue():
    booking = _booking_with([])
    status = safety_status(booking, T + timedelta(hours=5))
    assert status.next_check_in_due is None
    assert status.is_overdue is False
    assert status.is_active is True


def test_check_in_status_ignores_sos_events():
    booking = _booking_with([_check_in(at=T), _check_in("sos", at=T + timedelta(minutes=20))])
    now = T + timedelta(minutes=40)
    status = check_in_status(booking, now)
    assert status.total_check_ins == 1
    assert status.last_check_in.type == "manual"
    assert status.time_since_last_check_in == 40
    assert status.is_overdue is True
    assert status.check_in_interval == 30

    full = safety_status(booking, now)
    assert full.last_check_in.type == "sos"
    assert full.next_check_in_due == T + timedelta(minutes=50)
    assert full.is_overdue is False


def test_sos_is_recorded_and_fans_out(stores):
    stores.profiles.update_emergency_contact(
        "user_1", EmergencyContact(name="Ravi", phone="+91 98450 00000", relationship="brother")
    )
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    dispatcher = _RecordingDispatcher()

    _, check_in, alert = _monitor(stores, dispatcher).trigger_sos(
        REQUESTER, booking.id, GeoPoint(lat=12.97, lng=77.59), "Feeling unsafe"
    )

    assert check_in.type == "sos" and check_in.is_emergency
    assert alert.alert_id == check_in.id
    assert alert.emergency_contact == {"name": "Ravi", "relationship": "brother"}
    assert "phone" not in alert.emergency_contact
    booking_id, reporter, staff, contact = dispatcher.calls[0]
    assert booking_id == booking.id
    assert reporter == "user_1"
    assert staff == ["admin_1"]
    assert contact.relationship == "brother"


def test_sos_survives_fan_out_failure(stores, caplog):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    monitor = _monitor(stores, _BrokenDispatcher())
    with caplog.at_level(logging.ERROR):
        monitor.trigger_sos(FRIEND, booking.id)
    reloaded = stores.bookings.get_booking(REQUESTER, booking.id)
    assert [c.type for c in reloaded.check_ins] == ["sos"]
    assert "SOS fan-out failed" in caplog.text


def test_duplicate_sos_appends_duplicates(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    monitor = _monitor(stores, _RecordingDispatcher())
    monitor.trigger_sos(REQUESTER, booking.id)
    monitor.trigger_sos(REQUESTER, booking.id)
    assert len(stores.bookings.get_booking(REQUESTER, booking.id).check_ins) == 2


def test_sos_requires_participant(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    monitor = _monitor(stores, _RecordingDispatcher())
    with pytest.raises(ForbiddenError):
        monitor.trigger_sos(STRANGER, booking.id)
    with pytest.raises(ForbiddenError):
        monitor.trigger_sos(ADMIN, booking.id)


def test_manual_check_in_and_location_share(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    monitor = _monitor(stores, _RecordingDispatcher())
    with pytest.raises(ValidationError):
        monitor.check_in(REQUESTER, booking.id, CheckInRequest(type="manual"))

    stores.bookings.update_status(FRIEND, booking.id, "confirmed")
    monitor.check_in(REQUESTER, booking.id, CheckInRequest(type="manual", notes="Arrived"))
    shared = monitor.share_location(FRIEND, booking.id, GeoPoint(lat=12.9, lng=77.6))
    assert shared.type == "auto"
    assert shared.location.lat == 12.9

    status = monitor.check_in_status(REQUESTER, booking.id)
    assert status.total_check_ins == 2
    assert status.is_overdue is False


def test_verify_safety_code(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    monitor = _monitor(stores, _RecordingDispatcher())
    assert monitor.verify_safety_code(FRIEND, booking.id, booking.safety_code) is True
    wrong = "0000" if booking.safety_code != "0000" else "1111"
    assert monitor.verify_safety_code(FRIEND, booking.id, wrong) is False


def test_overdue_bookings_lists_active_stale_bookings(stores):
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    stores.bookings.update_status(FRIEND, booking.id, "confirmed")
    monitor = _monitor(stores, _RecordingDispatcher())
    monitor.check_in(REQUESTER, booking.id, CheckInRequest(type="manual"))
    now = datetime.now(timezone.utc)
    assert monitor.overdue_bookings(now) == []
    assert [b.id for b in monitor.overdue_bookings(now + timedelta(minutes=45))] == [booking.id]


def test_alert_dispatcher_posts_webhook_and_notifies(monkeypatch):
    posted = []

    class _Response:
        def raise_for_status(self):
            return None

    def fake_post(url, json, timeout):
        posted.append((url, json))
        return _Response()

    monkeypatch.setattr(safety_alerts_module.requests, "post", fake_post)
    notifications = NotificationStore(sender=_SilentSender())
    dispatcher = SafetyAlertDispatcher(notifications=notifications, webhook_url="https://ops.example.com/sos")
    booking = _booking_with([])
    sos = _check_in("sos")

    delivered = dispatcher.dispatch(booking, sos, reporter_id="user_1", staff_user_ids=["admin_1", "admin_1"])

    assert delivered == {"participant": True, "staff": True, "webhook": True}
    assert posted[0][0] == "https://ops.example.com/sos"
    assert posted[0][1]["bookingId"] == "bk_safety"
    assert posted[0][1]["alertId"] == sos.id
    assert [n.category for n in notifications.list_for_user("friend_1")] == ["safety"]
    assert len(notifications.list_for_user("admin_1")) == 1


def test_alert_dispatcher_logs_webhook_failure(monkeypatch, caplog):
    def failing_post(url, json, timeout):
        raise safety_alerts_module.requests.ConnectionError("unreachable")

    monkeypatch.setattr(safety_alerts_module.requests, "post", failing_post)
    dispatcher = SafetyAlertDispatcher(
        notifications=NotificationStore(sender=_SilentSender()),
        webhook_url="https://ops.example.com/sos",
    )
    with caplog.at_level(logging.ERROR):
        delivered = dispatcher.dispatch(_booking_with([]), _check_in("sos"), "friend_1", [])
    assert delivered["webhook"] is False
    assert delivered["participant"] is True
    assert "Failed to post SOS alert" in caplog.text
