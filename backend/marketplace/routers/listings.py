from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from marketplace.auth import assert_actor_authorized
from marketplace.models import (
    AvailabilityVerdict,
    ListingActiveRequest,
    ListingCreateRequest,
    ListingUpdateRequest,
    ServiceCategory,
    ServiceListing,
)
from marketplace.routers.http_errors import raise_http_error
from marketplace.services.booking_service import booking_service
from marketplace.services.errors import MarketplaceError
from marketplace.services.marketplace_store import marketplace_store

router = APIRouter(tags=["listings"])


@router.get("/categories", response_model=list[ServiceCategory])
def list_categories():
    return marketplace_store.list_categories()


@router.get("/listings", response_model=list[ServiceListing])
def list_listings(
    category_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None),
    min_price: Optional[float] = Query(default=None),
    max_price: Optional[float] = Query(default=None),
    include_inactive: bool = Query(default=False),
    sort_by: str = Query(default="newest"),
):
    try:
        return marketplace_store.list_listings(
            category_id=category_id,
            provider_id=provider_id,
            q=q,
            min_price=min_price,
            max_price=max_price,
            include_inactive=include_inactive,
            sort_by=sort_by,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/listings", response_model=ServiceListing)
def create_listing(request: ListingCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.create_listing(
            actor_id=request.actor_id,
            category_id=request.category_id,
            title=request.title,
            description=request.description,
            price=request.price,
            price_type=request.price_type,
            duration_minutes=request.duration_minutes,
            location=request.location,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/listings/{listing_id}", response_model=ServiceListing)
def get_listing(listing_id: str):
    listing = marketplace_store.get_listing(listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    return listing


@router.post("/listings/{listing_id}/update", response_model=ServiceListing)
def update_listing(
    listing_id: str,
    request: ListingUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.update_listing(
            listing_id=listing_id,
            actor_id=request.actor_id,
            category_id=request.category_id,
            title=request.title,
            description=request.description,
            price=request.price,
            price_type=request.price_type,
            duration_minutes=request.duration_minutes,
            location=request.location,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/listings/{listing_id}/active", response_model=ServiceListing)
def set_listing_active(
    listing_id: str,
    request: ListingActiveRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.set_listing_active(
            listing_id=listing_id,
            actor_id=request.actor_id,
            is_active=request.is_active,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/listings/{listing_id}/availability", response_model=AvailabilityVerdict)
def check_listing_availability(
    listing_id: str,
    date: str = Query(...),
    time: str = Query(...),
):
    try:
        return booking_service.check_availability(
            listing_id=listing_id,
            scheduled_date=date,
            scheduled_time=time,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/listings/{listing_id}/slots", response_model=list[str])
def listing_open_slots(listing_id: str, date: str = Query(...)):
    try:
        return booking_service.open_slots(listing_id=listing_id, scheduled_date=date)
    except MarketplaceError as exc:
        raise_http_error(exc)
