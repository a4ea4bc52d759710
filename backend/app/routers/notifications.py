from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth import require_actor
from app.models import Actor, DeviceTokenRegisterRequest, Envelope, NotificationRecord
from app.services.notification_store import notification_store

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=Envelope[List[NotificationRecord]])
def list_notifications(
    unread_only: bool = Query(default=False),
    actor: Actor = Depends(require_actor),
):
    return Envelope(data=notification_store.list_for_user(user_id=actor.user_id, unread_only=unread_only))


@router.post("/register-device", response_model=Envelope[Dict[str, str]])
def register_device(payload: DeviceTokenRegisterRequest, actor: Actor = Depends(require_actor)):
    notification_store.register_device_token(user_id=actor.user_id, device_token=payload.device_token)
    return Envelope(data={"status": "ok"})


@router.post("/{notification_id}/read", response_model=Envelope[NotificationRecord])
def mark_notification_read(notification_id: str, actor: Actor = Depends(require_actor)):
    updated = notification_store.mark_read(user_id=actor.user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return Envelope(data=updated)
