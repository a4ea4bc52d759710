from fastapi import APIRouter, Depends, HTTPException

from app.auth import require_actor
from app.models import (
    Actor,
    AvailabilityUpdateRequest,
    Envelope,
    PresencePackage,
    PresencePackageCreateRequest,
    PresencePackageUpdateRequest,
    ProviderProfile,
    ProviderProfileCreateRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.profile_store import profile_store

router = APIRouter(prefix="/friends", tags=["friends"])


@router.post("/profile", response_model=Envelope[ProviderProfile], status_code=201)
def create_profile(payload: ProviderProfileCreateRequest, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=profile_store.create_profile(actor.user_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{profile_id}", response_model=Envelope[ProviderProfile])
def get_profile(profile_id: str, actor: Actor = Depends(require_actor)):
    profile = profile_store.get_profile(profile_id)
    if not profile or not profile.is_active:
        raise HTTPException(status_code=404, detail="Friend profile not found")
    return Envelope(data=profile)


@router.post("/packages", response_model=Envelope[PresencePackage], status_code=201)
def add_package(payload: PresencePackageCreateRequest, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=profile_store.add_package(actor.user_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.put("/packages/{package_id}", response_model=Envelope[PresencePackage])
def update_package(
    package_id: str,
    payload: PresencePackageUpdateRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        return Envelope(data=profile_store.update_package(actor.user_id, package_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.put("/availability", response_model=Envelope[ProviderProfile])
def update_availability(payload: AvailabilityUpdateRequest, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=profile_store.update_availability(actor.user_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)
