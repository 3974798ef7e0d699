from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from marketplace.auth import assert_actor_authorized
from marketplace.models import DeviceTokenRegisterRequest, NotificationRecord
from marketplace.services.notification_store import notification_store
from marketplace.services.push_sender import push_sender

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    profile_id: str = Query(...),
    unread_only: bool = Query(default=False),
):
    return notification_store.list_for_profile(profile_id=profile_id, unread_only=unread_only)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=payload.profile_id, authorization=authorization)
    push_sender.register(profile_id=payload.profile_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/read-all", response_model=dict)
def mark_all_read(
    profile_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=profile_id, authorization=authorization)
    return {"updated": notification_store.mark_all_read(profile_id=profile_id)}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    profile_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=profile_id, authorization=authorization)
    updated = notification_store.mark_read(profile_id=profile_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
