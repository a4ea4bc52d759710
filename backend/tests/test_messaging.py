import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import FRIEND, REQUESTER, booking_request

from app.models import CheckInRequest, GeoPoint
from app.services.connection_registry import SAFETY_ROOM, ConnectionRegistry, booking_room
from app.services.messaging import MessagingService
from app.services.safety import SafetyMonitor


class _Listener:
    def __init__(self):
        self.frames = []

    async def send_json(self, frame):
        self.frames.append(frame)

    async def close(self, code=1000):
        return None


class _QuietDispatcher:
    def dispatch(self, *args, **kwargs):
        return {}


def _service(stores) -> MessagingService:
    return MessagingService(stores.bookings, SafetyMonitor(stores.bookings, stores.profiles, _QuietDispatcher()))


def _active_booking(stores) -> str:
    booking = stores.bookings.create_booking(REQUESTER, booking_request())
    stores.bookings.update_status(FRIEND, booking.id, "confirmed")
    return booking.id


def _delivered_while_room_locked(booking_id, operation):
    async def scenario():
        registry = ConnectionRegistry()
        listener = _Listener()
        room = booking_room(booking_id)
        await registry.join(room, listener)
        await registry.join(SAFETY_ROOM, _Listener())

        lock = registry.room_lock(room)
        await lock.acquire()
        task = asyncio.create_task(operation(registry))
        await asyncio.sleep(0.3)
        while_locked = [frame["event"] for frame in listener.frames]
        lock.release()
        await task
        return while_locked, [frame["event"] for frame in listener.frames]

    return asyncio.run(scenario())


def test_check_in_waits_for_room_lock(stores):
    booking_id = _active_booking(stores)
    service = _service(stores)

    while_locked, after = _delivered_while_room_locked(
        booking_id,
        lambda registry: service.check_in(registry, REQUESTER, booking_id, CheckInRequest(type="manual")),
    )

    assert while_locked == []
    assert after == ["check-in"]


def test_location_share_waits_for_room_lock(stores):
    booking_id = _active_booking(stores)
    service = _service(stores)

    while_locked, after = _delivered_while_room_locked(
        booking_id,
        lambda registry: service.share_location(registry, FRIEND, booking_id, GeoPoint(lat=12.9, lng=77.6)),
    )

    assert while_locked == []
    assert after == ["location-update"]


def test_sos_waits_for_room_lock(stores):
    booking_id = _active_booking(stores)
    service = _service(stores)

    while_locked, after = _delivered_while_room_locked(
        booking_id,
        lambda registry: service.trigger_sos(registry, REQUESTER, booking_id),
    )

    assert while_locked == []
    assert after == ["sos-triggered"]
