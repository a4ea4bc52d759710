from fastapi import APIRouter, Depends, HTTPException

from app.auth import DEMO_PASSWORD, create_access_token, require_actor
from app.models import Actor, AuthLoginRequest, AuthLoginResponse, AuthMeResponse, Envelope, RegisterRequest
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.profile_store import profile_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=Envelope[AuthLoginResponse], status_code=201)
def register(payload: RegisterRequest):
    """Create an account and return a token for it.

    No password is stored: every account signs in through /auth/login with the
    shared DEMO_PASSWORD.
    """
    try:
        user = profile_store.create_user(
            email=payload.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            phone=payload.phone,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    token, expires_at = create_access_token(user_id=user.id)
    return Envelope(data=AuthLoginResponse(access_token=token, user_id=user.id, expires_at=expires_at))


@router.post("/login", response_model=Envelope[AuthLoginResponse])
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user = profile_store.get_user(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(user_id=user.id)
    return Envelope(data=AuthLoginResponse(access_token=token, user_id=user.id, expires_at=expires_at))


@router.get("/me", response_model=Envelope[AuthMeResponse])
def me(actor: Actor = Depends(require_actor)):
    return Envelope(data=AuthMeResponse(user_id=actor.user_id, role=actor.role))
