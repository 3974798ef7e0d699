from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from marketplace.auth import assert_actor_authorized, assert_moderator
from marketplace.models import (
    AvailabilityReplaceRequest,
    AvailabilityRule,
    ProviderCreateRequest,
    ProviderDetails,
    ProviderUpdateRequest,
    ProviderVerificationRequest,
    Review,
    ServiceProvider,
)
from marketplace.routers.http_errors import raise_http_error
from marketplace.services.errors import MarketplaceError
from marketplace.services.marketplace_store import marketplace_store

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[ServiceProvider])
def list_providers(
    skill: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None),
    min_rating: Optional[float] = Query(default=None),
    include_unverified: bool = Query(default=False),
    sort_by: str = Query(default="rating"),
):
    try:
        return marketplace_store.list_providers(
            skill=skill,
            q=q,
            min_rating=min_rating,
            include_unverified=include_unverified,
            sort_by=sort_by,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("", response_model=ServiceProvider)
def create_provider(request: ProviderCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.create_provider(
            profile_id=request.actor_id,
            business_name=request.business_name,
            description=request.description,
            skills=request.skills,
            hourly_rate=request.hourly_rate,
            service_radius_km=request.service_radius_km,
            experience_years=request.experience_years,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}", response_model=ProviderDetails)
def provider_details(provider_id: str):
    provider = marketplace_store.get_provider(provider_id)
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    profile = marketplace_store.get_profile(provider.profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Provider profile not found")
    return ProviderDetails(
        provider=provider,
        profile=profile,
        availability=marketplace_store.list_availability_rules(provider_id),
        reviews=marketplace_store.list_reviews(provider_id),
    )


@router.post("/{provider_id}/update", response_model=ServiceProvider)
def update_provider(
    provider_id: str,
    request: ProviderUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.update_provider(
            provider_id=provider_id,
            actor_id=request.actor_id,
            business_name=request.business_name,
            description=request.description,
            skills=request.skills,
            hourly_rate=request.hourly_rate,
            service_radius_km=request.service_radius_km,
            experience_years=request.experience_years,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{provider_id}/verification", response_model=ServiceProvider)
def set_verification_status(
    provider_id: str,
    request: ProviderVerificationRequest,
    x_moderation_token: Optional[str] = Header(default=None),
):
    assert_moderator(x_moderation_token)
    try:
        return marketplace_store.set_provider_status(provider_id, request.status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/availability", response_model=list[AvailabilityRule])
def get_availability(provider_id: str):
    if not marketplace_store.get_provider(provider_id):
        raise HTTPException(status_code=404, detail="Provider not found")
    return marketplace_store.list_availability_rules(provider_id)


@router.put("/{provider_id}/availability", response_model=list[AvailabilityRule])
def replace_availability(
    provider_id: str,
    request: AvailabilityReplaceRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.replace_availability(
            provider_id=provider_id,
            actor_id=request.actor_id,
            rules=request.rules,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/reviews", response_model=list[Review])
def list_reviews(provider_id: str):
    if not marketplace_store.get_provider(provider_id):
        raise HTTPException(status_code=404, detail="Provider not found")
    return marketplace_store.list_reviews(provider_id)
