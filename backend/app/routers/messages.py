from typing import Dict, List

from fastapi import APIRouter, Depends

from app.auth import require_actor
from app.models import Actor, Conversation, Envelope
from app.routers.http_errors import raise_http_error
from app.services.booking_store import booking_store
from app.services.errors import MarketplaceError

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/conversations", response_model=Envelope[List[Conversation]])
def conversations(actor: Actor = Depends(require_actor)):
    return Envelope(data=booking_store.conversations(actor))


@router.get("/unread", response_model=Envelope[Dict[str, int]])
def unread(actor: Actor = Depends(require_actor)):
    return Envelope(data={"unreadCount": booking_store.total_unread(actor)})


@router.put("/read/{booking_id}", response_model=Envelope[Dict[str, int]])
def mark_read(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        marked = booking_store.mark_messages_read(actor, booking_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return Envelope(data={"marked": marked})
