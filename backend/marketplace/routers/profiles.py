from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from marketplace.auth import assert_actor_authorized
from marketplace.models import Profile, ProfileUpdateRequest, ServiceProvider
from marketplace.routers.http_errors import raise_http_error
from marketplace.services.errors import MarketplaceError
from marketplace.services.marketplace_store import marketplace_store

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("/{profile_id}", response_model=Profile)
def get_profile(profile_id: str):
    profile = marketplace_store.get_profile(profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


@router.get("/{profile_id}/provider", response_model=ServiceProvider)
def get_profile_provider(profile_id: str):
    provider = marketplace_store.get_provider_by_profile(profile_id)
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    return provider


@router.post("/{profile_id}/update", response_model=Profile)
def update_profile(
    profile_id: str,
    request: ProfileUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return marketplace_store.update_profile(
            profile_id=profile_id,
            actor_id=request.actor_id,
            first_name=request.first_name,
            last_name=request.last_name,
            phone_number=request.phone_number,
            location=request.location,
            avatar_url=request.avatar_url,
            role=request.role,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
