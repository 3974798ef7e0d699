from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query

from marketplace.auth import assert_actor_authorized
from marketplace.models import (
    Booking,
    BookingCreateRequest,
    BookingStatusChange,
    BookingTransitionRequest,
    BookingTransitionResponse,
    Review,
    ReviewCreateRequest,
)
from marketplace.routers.http_errors import raise_http_error
from marketplace.services.booking_notifier import booking_notifier
from marketplace.services.booking_service import booking_service
from marketplace.services.errors import MarketplaceError
from marketplace.services.lifecycle import TransitionPlan
from marketplace.services.marketplace_store import marketplace_store
from marketplace.services.notification_store import notification_store

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _schedule_events(background_tasks: BackgroundTasks, plan: TransitionPlan) -> None:
    for event in plan.events:
        background_tasks.add_task(booking_notifier.notify, event)


@router.post("", response_model=Booking)
def create_booking(
    request: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        plan = booking_service.create_booking(
            actor_id=request.actor_id,
            listing_id=request.listing_id,
            scheduled_date=request.scheduled_date,
            scheduled_time=request.scheduled_time,
            client_notes=request.client_notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    _schedule_events(background_tasks, plan)
    return plan.booking


@router.get("", response_model=list[Booking])
def list_bookings(
    profile_id: str = Query(...),
    role: Optional[str] = Query(default=None),
):
    try:
        return marketplace_store.list_bookings(profile_id=profile_id, role=role)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    actor_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=actor_id, authorization=authorization)
    try:
        return booking_service.get_booking(booking_id=booking_id, actor_id=actor_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChange])
def booking_history(
    booking_id: str,
    actor_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=actor_id, authorization=authorization)
    try:
        booking_service.get_booking(booking_id=booking_id, actor_id=actor_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return marketplace_store.list_booking_history(booking_id)


@router.post("/{booking_id}/status", response_model=BookingTransitionResponse)
def update_booking_status(
    booking_id: str,
    request: BookingTransitionRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        plan = booking_service.transition(
            booking_id=booking_id,
            actor_id=request.actor_id,
            target=request.status,
            provider_notes=request.provider_notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    _schedule_events(background_tasks, plan)
    return BookingTransitionResponse(booking=plan.booking, changed=plan.changed)


@router.get("/{booking_id}/review", response_model=Review)
def get_booking_review(
    booking_id: str,
    actor_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=actor_id, authorization=authorization)
    try:
        booking_service.get_booking(booking_id=booking_id, actor_id=actor_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    review = marketplace_store.get_review_for_booking(booking_id)
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@router.post("/{booking_id}/review", response_model=Review)
def review_booking(
    booking_id: str,
    request: ReviewCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        review = booking_service.create_review(
            booking_id=booking_id,
            actor_id=request.actor_id,
            rating=request.rating,
            comment=request.comment,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    provider = marketplace_store.get_provider(review.provider_id)
    if provider:
        background_tasks.add_task(
            notification_store.create,
            profile_id=provider.profile_id,
            title="New review",
            body=f"You received a {review.rating}-star review.",
            category="review",
            deep_link=f"booking:{booking_id}",
        )
    return review
