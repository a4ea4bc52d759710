"""Async bridge between the booking log and live connections.

Writes run on the threadpool against the synchronous stores; the per-room lock
is held across the write and the broadcast so subscribers see events in the
same order they were appended.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from app.models import Actor, CheckIn, CheckInRequest, GeoPoint, Message, SosAlert
from app.services.booking_store import BookingStore, booking_store
from app.services.connection_registry import SAFETY_ROOM, ConnectionRegistry, booking_room, user_room
from app.services.safety import SafetyMonitor, safety_monitor

logger = logging.getLogger(__name__)


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


class MessagingService:
    def __init__(self, bookings: BookingStore, safety: SafetyMonitor) -> None:
        self.bookings = bookings
        self.safety = safety

    async def send_message(
        self,
        registry: Optional[ConnectionRegistry],
        actor: Actor,
        booking_id: str,
        content: str,
        message_type: str = "text",
    ) -> Message:
        if registry is None:
            return await run_in_threadpool(self.bookings.append_message, actor, booking_id, content, message_type)
        room = booking_room(booking_id)
        async with registry.room_lock(room):
            message = await run_in_threadpool(self.bookings.append_message, actor, booking_id, content, message_type)
            await registry.broadcast(room, "new-message", {"bookingId": booking_id, "message": _dump(message)})
        return message

    async def check_in(
        self,
        registry: Optional[ConnectionRegistry],
        actor: Actor,
        booking_id: str,
        request: CheckInRequest,
    ) -> CheckIn:
        if request.type == "sos":
            _, alert_check_in = await self.trigger_sos(registry, actor, booking_id, request.location, request.notes)
            return alert_check_in
        if registry is None:
            return await run_in_threadpool(self.safety.check_in, actor, booking_id, request)
        room = booking_room(booking_id)
        async with registry.room_lock(room):
            check_in = await run_in_threadpool(self.safety.check_in, actor, booking_id, request)
            await registry.broadcast(
                room,
                "check-in",
                {"bookingId": booking_id, "userId": actor.user_id, "checkIn": _dump(check_in)},
            )
        return check_in

    async def share_location(
        self,
        registry: Optional[ConnectionRegistry],
        actor: Actor,
        booking_id: str,
        location: GeoPoint,
        exclude: Any = None,
    ) -> CheckIn:
        if registry is None:
            return await run_in_threadpool(self.safety.share_location, actor, booking_id, location)
        room = booking_room(booking_id)
        async with registry.room_lock(room):
            check_in = await run_in_threadpool(self.safety.share_location, actor, booking_id, location)
            await registry.broadcast(
                room,
                "location-update",
                {"bookingId": booking_id, "userId": actor.user_id, "location": _dump(location)},
                exclude=exclude,
            )
        return check_in

    async def trigger_sos(
        self,
        registry: Optional[ConnectionRegistry],
        actor: Actor,
        booking_id: str,
        location: Optional[GeoPoint] = None,
        notes: Optional[str] = None,
    ) -> Tuple[SosAlert, CheckIn]:
        if registry is None:
            _, check_in, alert = await run_in_threadpool(self.safety.trigger_sos, actor, booking_id, location, notes)
            return alert, check_in

        room = booking_room(booking_id)
        async with registry.room_lock(room):
            booking, check_in, alert = await run_in_threadpool(
                self.safety.trigger_sos, actor, booking_id, location, notes
            )
            payload = {
                "bookingId": booking.id,
                "userId": actor.user_id,
                "alertId": alert.alert_id,
                "location": _dump(location) if location else None,
                "timestamp": check_in.timestamp.isoformat(),
            }
            try:
                await registry.broadcast(room, "sos-triggered", payload)
            except Exception:
                logger.exception("Realtime SOS broadcast failed for booking %s", booking.id)

        # Operations and personal rooms are outside the booking room's ordering.
        try:
            await registry.broadcast(SAFETY_ROOM, "sos-alert", payload)
            other = booking.friend_id if actor.user_id == booking.user_id else booking.user_id
            await registry.broadcast(user_room(other), "sos-alert", payload)
        except Exception:
            logger.exception("Realtime SOS broadcast failed for booking %s", booking.id)
        return alert, check_in


messaging_service = MessagingService(booking_store, safety_monitor)
