from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query

from marketplace.auth import assert_actor_authorized
from marketplace.models import ConversationSummary, Message, MessageCreateRequest
from marketplace.routers.http_errors import raise_http_error
from marketplace.services.errors import MarketplaceError
from marketplace.services.marketplace_store import marketplace_store
from marketplace.services.notification_store import notification_store

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", response_model=Message)
def send_message(
    request: MessageCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        message = marketplace_store.send_message(
            sender_id=request.actor_id,
            receiver_id=request.receiver_id,
            content=request.content,
            booking_id=request.booking_id,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    sender = marketplace_store.get_profile(message.sender_id)
    background_tasks.add_task(
        notification_store.create,
        profile_id=message.receiver_id,
        title=f"New message from {sender.display_name if sender else 'a user'}",
        body=message.content[:140],
        category="message",
        deep_link=f"conversation:{message.sender_id}",
    )
    return message


@router.get("/conversations", response_model=list[ConversationSummary])
def list_conversations(
    profile_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=profile_id, authorization=authorization)
    return marketplace_store.list_conversations(profile_id)


@router.get("/with/{other_id}", response_model=list[Message])
def conversation(
    other_id: str,
    profile_id: str = Query(...),
    limit: int = Query(default=200, ge=1, le=500),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=profile_id, authorization=authorization)
    return marketplace_store.list_conversation(profile_id, other_id, limit=limit)
