import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaError
from starlette.concurrency import run_in_threadpool

from app.auth import resolve_actor
from app.models import Actor, CheckInRequest, GeoPoint, MessageCreateRequest
from app.services.booking_store import booking_store
from app.services.connection_registry import SAFETY_ROOM, ConnectionRegistry, booking_room, user_room
from app.services.errors import MarketplaceError
from app.services.messaging import messaging_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

UNAUTHORIZED_CLOSE_CODE = 4401


class ClientConnection:
    """One authenticated socket, the unit the registry groups into rooms."""

    def __init__(self, websocket: WebSocket, actor: Actor) -> None:
        self.websocket = websocket
        self.actor = actor

    async def send_json(self, frame: Dict[str, Any]) -> None:
        await self.websocket.send_json(frame)

    async def send_event(self, event: str, data: Dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def close(self, code: int = 1000) -> None:
        await self.websocket.close(code=code)


async def _require_joined(registry: ConnectionRegistry, connection: ClientConnection, booking_id: str) -> bool:
    if registry.is_member(booking_room(booking_id), connection):
        return True
    await connection.send_event("error", {"message": "Join the booking before sending events", "bookingId": booking_id})
    return False


async def handle_event(
    registry: ConnectionRegistry,
    connection: ClientConnection,
    event: str,
    data: Dict[str, Any],
) -> None:
    actor = connection.actor
    booking_id = str(data.get("bookingId", ""))

    if event == "join-booking":
        await run_in_threadpool(booking_store.get_booking, actor, booking_id)
        await registry.join(booking_room(booking_id), connection)
        await connection.send_event("joined-booking", {"bookingId": booking_id})
    elif event == "leave-booking":
        await registry.leave(booking_room(booking_id), connection)
        await connection.send_event("left-booking", {"bookingId": booking_id})
    elif event == "sos":
        location = GeoPoint.model_validate(data["location"]) if data.get("location") else None
        await messaging_service.trigger_sos(registry, actor, booking_id, location, data.get("notes"))
    elif not await _require_joined(registry, connection, booking_id):
        return
    elif event == "send-message":
        request = MessageCreateRequest.model_validate(data)
        await messaging_service.send_message(registry, actor, booking_id, request.content, request.type)
    elif event == "share-location":
        location = GeoPoint.model_validate(data)
        await messaging_service.share_location(registry, actor, booking_id, location, exclude=connection)
    elif event == "check-in":
        await messaging_service.check_in(registry, actor, booking_id, CheckInRequest.model_validate(data))
    elif event == "typing":
        await registry.broadcast(
            booking_room(booking_id),
            "user-typing",
            {"bookingId": booking_id, "userId": actor.user_id, "isTyping": bool(data.get("isTyping", True))},
            exclude=connection,
        )
    else:
        await connection.send_event("error", {"message": f"Unknown event: {event}"})


def _parse_frame(raw: str) -> Optional[Dict[str, Any]]:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None
    if not isinstance(frame.get("data", {}), dict):
        return None
    return frame


@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    registry: ConnectionRegistry = websocket.app.state.registry
    actor = await run_in_threadpool(resolve_actor, token)
    if not actor:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    await websocket.accept()
    connection = ClientConnection(websocket, actor)
    await registry.join(user_room(actor.user_id), connection)
    if actor.is_staff:
        await registry.join(SAFETY_ROOM, connection)
    logger.info("Realtime connection opened for %s", actor.user_id)

    try:
        while True:
            frame = _parse_frame(await websocket.receive_text())
            if frame is None:
                await connection.send_event("error", {"message": "Frames must be {\"event\": str, \"data\": object}"})
                continue
            try:
                await handle_event(registry, connection, frame["event"], frame.get("data", {}))
            except (MarketplaceError, SchemaError) as exc:
                await connection.send_event("error", {"message": str(exc), "event": frame["event"]})
    except WebSocketDisconnect:
        pass
    finally:
        await registry.disconnect(connection)
        logger.info("Realtime connection closed for %s", actor.user_id)
