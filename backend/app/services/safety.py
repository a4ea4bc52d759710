"""Check-in liveness and SOS escalation for bookings in their active window.

Nothing here is stored: due times and overdue flags are derived from the
booking's check-in log every time they are asked for.
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from app.models import (
    Actor,
    Booking,
    CheckIn,
    CheckInRequest,
    CheckInStatus,
    EmergencyContact,
    GeoPoint,
    SafetyStatus,
    SosAlert,
)
from app.services.booking_lifecycle import ACTIVE_STATUSES
from app.services.booking_store import BookingStore, booking_store
from app.services.profile_store import ProfileStore, profile_store
from app.services.safety_alerts import SafetyAlertDispatcher, safety_alerts

logger = logging.getLogger(__name__)

CHECK_IN_INTERVAL = timedelta(minutes=30)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _last(check_ins: List[CheckIn]) -> Optional[CheckIn]:
    return check_ins[-1] if check_ins else None


def next_check_in_due(check_ins: List[CheckIn]) -> Optional[datetime]:
    last = _last(check_ins)
    return last.timestamp + CHECK_IN_INTERVAL if last else None


def is_overdue(booking: Booking, now: datetime) -> bool:
    """True when the last routine check-in is more than one interval old."""
    due = next_check_in_due(_routine(booking))
    return due is not None and now > due


def _routine(booking: Booking) -> List[CheckIn]:
    return [c for c in booking.check_ins if c.type != "sos"]


def safety_status(
    booking: Booking,
    now: datetime,
    emergency_contact: Optional[EmergencyContact] = None,
) -> SafetyStatus:
    due = next_check_in_due(booking.check_ins)
    return SafetyStatus(
        booking_id=booking.id,
        status=booking.status,
        is_active=booking.status in ACTIVE_STATUSES,
        safety_code=booking.safety_code,
        check_ins=booking.check_ins,
        last_check_in=_last(booking.check_ins),
        next_check_in_due=due,
        is_overdue=due is not None and now > due,
        emergency_contact=emergency_contact,
    )


def check_in_status(booking: Booking, now: datetime) -> CheckInStatus:
    routine = _routine(booking)
    last = _last(routine)
    return CheckInStatus(
        total_check_ins=len(routine),
        last_check_in=last,
        time_since_last_check_in=(now - last.timestamp).total_seconds() / 60 if last else None,
        is_overdue=is_overdue(booking, now),
        check_in_interval=int(CHECK_IN_INTERVAL.total_seconds() // 60),
    )


class SafetyMonitor:
    def __init__(
        self,
        bookings: BookingStore,
        profiles: ProfileStore,
        alerts: SafetyAlertDispatcher,
    ) -> None:
        self.bookings = bookings
        self.profiles = profiles
        self.alerts = alerts

    def _emergency_contact(self, booking: Booking) -> Optional[EmergencyContact]:
        requester = self.profiles.get_user(booking.user_id)
        return requester.emergency_contact if requester else None

    def status(self, actor: Actor, booking_id: str, now: Optional[datetime] = None) -> SafetyStatus:
        booking = self.bookings.get_booking(actor, booking_id)
        return safety_status(booking, now or _now(), self._emergency_contact(booking))

    def check_in_status(self, actor: Actor, booking_id: str, now: Optional[datetime] = None) -> CheckInStatus:
        booking = self.bookings.get_booking(actor, booking_id)
        return check_in_status(booking, now or _now())

    def check_in(self, actor: Actor, booking_id: str, request: CheckInRequest) -> CheckIn:
        if request.type == "sos":
            _, check_in, _ = self.trigger_sos(actor, booking_id, request.location, request.notes)
            return check_in
        _, check_in = self.bookings.append_check_in(
            actor,
            booking_id,
            request.type,
            location=request.location,
            notes=request.notes,
            is_emergency=request.is_emergency,
        )
        return check_in

    def share_location(self, actor: Actor, booking_id: str, location: GeoPoint) -> CheckIn:
        _, check_in = self.bookings.append_check_in(actor, booking_id, "auto", location=location)
        return check_in

    def trigger_sos(
        self,
        actor: Actor,
        booking_id: str,
        location: Optional[GeoPoint] = None,
        notes: Optional[str] = None,
    ) -> Tuple[Booking, CheckIn, SosAlert]:
        booking, check_in = self.bookings.append_check_in(
            actor,
            booking_id,
            "sos",
            location=location,
            notes=notes,
            is_emergency=True,
        )
        logger.warning("SOS triggered on booking %s by %s", booking.id, actor.user_id)

        contact = None
        try:
            contact = self._emergency_contact(booking)
            self.alerts.dispatch(
                booking,
                check_in,
                reporter_id=actor.user_id,
                staff_user_ids=self.profiles.list_staff_user_ids(),
                emergency_contact=contact,
            )
        except Exception:
            logger.exception("SOS fan-out failed for booking %s", booking.id)

        alert = SosAlert(
            alert_id=check_in.id,
            timestamp=check_in.timestamp,
            emergency_contact={"name": contact.name, "relationship": contact.relationship} if contact else None,
        )
        return booking, check_in, alert

    def verify_safety_code(self, actor: Actor, booking_id: str, code: str) -> bool:
        booking = self.bookings.get_booking(actor, booking_id)
        return hmac.compare_digest(booking.safety_code.encode("utf-8"), code.strip().encode("utf-8"))

    def overdue_bookings(self, now: Optional[datetime] = None) -> List[Booking]:
        now = now or _now()
        return [b for b in self.bookings.list_active_bookings() if is_overdue(b, now)]


safety_monitor = SafetyMonitor(booking_store, profile_store, safety_alerts)
