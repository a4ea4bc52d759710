from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from app.auth import require_actor
from app.models import Actor, EmergencyContact, Envelope, User
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.profile_store import profile_store

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=Envelope[User])
def get_me(actor: Actor = Depends(require_actor)):
    user = profile_store.get_user(actor.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return Envelope(data=user)


@router.put("/me/emergency-contact", response_model=Envelope[User])
def update_emergency_contact(payload: EmergencyContact, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=profile_store.update_emergency_contact(actor.user_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.delete("/me", response_model=Envelope[Dict[str, str]])
def delete_me(actor: Actor = Depends(require_actor)):
    try:
        profile_store.deactivate_user(actor.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data={"message": "Account deactivated"})
