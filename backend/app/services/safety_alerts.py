import logging
import os
from typing import Any, Dict, List, Optional

import requests

from app.models import Booking, CheckIn, EmergencyContact
from app.services.notification_store import NotificationStore, notification_store

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10


class SafetyAlertDispatcher:
    """Best-effort SOS fan-out: in-app/push notifications and the operations webhook.

    Every channel is attempted independently and failures are logged, never
    raised, so an SOS that has been recorded stays recorded.
    """

    def __init__(self, notifications: NotificationStore = notification_store, webhook_url: Optional[str] = None):
        self.notifications = notifications
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv("SAFETY_WEBHOOK_URL", "").strip()

    def dispatch(
        self,
        booking: Booking,
        check_in: CheckIn,
        reporter_id: str,
        staff_user_ids: List[str],
        emergency_contact: Optional[EmergencyContact] = None,
    ) -> Dict[str, bool]:
        delivered = {"participant": False, "staff": False, "webhook": False}
        other = booking.friend_id if reporter_id == booking.user_id else booking.user_id
        deep_link = f"/bookings/{booking.id}/safety"

        try:
            self.notifications.create(
                user_id=other,
                title="Emergency alert",
                body="Your companion has triggered an SOS. Stay safe and follow instructions from support.",
                category="safety",
                deep_link=deep_link,
            )
            delivered["participant"] = True
        except Exception:
            logger.exception("SOS participant notification failed for booking %s", booking.id)

        try:
            self.notifications.create_many(
                staff_user_ids,
                title="SOS triggered",
                body=f"Booking {booking.id}: SOS from {reporter_id}",
                category="safety",
                deep_link=deep_link,
            )
            delivered["staff"] = bool(staff_user_ids)
        except Exception:
            logger.exception("SOS staff notification failed for booking %s", booking.id)

        delivered["webhook"] = self._post_webhook(self._payload(booking, check_in, reporter_id, emergency_contact))
        return delivered

    def _payload(
        self,
        booking: Booking,
        check_in: CheckIn,
        reporter_id: str,
        emergency_contact: Optional[EmergencyContact],
    ) -> Dict[str, Any]:
        return {
            "type": "sos",
            "bookingId": booking.id,
            "alertId": check_in.id,
            "reporterId": reporter_id,
            "userId": booking.user_id,
            "friendId": booking.friend_id,
            "timestamp": check_in.timestamp.isoformat(),
            "location": check_in.location.model_dump() if check_in.location else None,
            "address": booking.location.address,
            "notes": check_in.notes,
            "emergencyContact": emergency_contact.model_dump() if emergency_contact else None,
        }

    def _post_webhook(self, payload: Dict[str, Any]) -> bool:
        if not self.webhook_url:
            logger.warning("SOS webhook not configured; alert %s only delivered in-app", payload["alertId"])
            return False
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
            response.raise_for_status()
            logger.info("SOS alert %s posted to operations webhook", payload["alertId"])
            return True
        except Exception:
            logger.exception("Failed to post SOS alert %s to operations webhook", payload["alertId"])
            return False


safety_alerts = SafetyAlertDispatcher()
