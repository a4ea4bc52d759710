from typing import Dict

from fastapi import APIRouter, Depends, Request

from app.auth import require_actor
from app.models import (
    Actor,
    CheckIn,
    CheckInStatus,
    Envelope,
    GeoPoint,
    LocationShareRequest,
    SafetyCodeRequest,
    SafetyStatus,
    SosAlert,
    SosRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.messaging import messaging_service
from app.services.safety import safety_monitor

router = APIRouter(prefix="/safety", tags=["safety"])


@router.post("/sos", response_model=Envelope[SosAlert], status_code=201)
async def trigger_sos(payload: SosRequest, request: Request, actor: Actor = Depends(require_actor)):
    registry = getattr(request.app.state, "registry", None)
    try:
        alert, _ = await messaging_service.trigger_sos(
            registry,
            actor,
            payload.booking_id,
            location=payload.location,
            notes=payload.notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data=alert)


@router.get("/status/{booking_id}", response_model=Envelope[SafetyStatus])
def safety_status(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=safety_monitor.status(actor, booking_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/location", response_model=Envelope[CheckIn], status_code=201)
async def share_location(payload: LocationShareRequest, request: Request, actor: Actor = Depends(require_actor)):
    registry = getattr(request.app.state, "registry", None)
    try:
        check_in = await messaging_service.share_location(
            registry,
            actor,
            payload.booking_id,
            GeoPoint(lat=payload.lat, lng=payload.lng),
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data=check_in)


@router.get("/checkin/{booking_id}", response_model=Envelope[CheckInStatus])
def check_in_status(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=safety_monitor.check_in_status(actor, booking_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/verify-code", response_model=Envelope[Dict[str, bool]])
def verify_code(payload: SafetyCodeRequest, actor: Actor = Depends(require_actor)):
    try:
        valid = safety_monitor.verify_safety_code(actor, payload.booking_id, payload.code)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data={"valid": valid})
