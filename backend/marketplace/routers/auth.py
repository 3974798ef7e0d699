from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from marketplace import auth as auth_config
from marketplace.auth import create_access_token, require_authenticated_profile
from marketplace.models import (
    AuthLoginRequest,
    AuthLoginResponse,
    AuthMeResponse,
    AuthSignupResponse,
    ProfileCreateRequest,
)
from marketplace.routers.http_errors import raise_http_error
from marketplace.services.booking_notifier import booking_notifier
from marketplace.services.errors import MarketplaceError
from marketplace.services.marketplace_store import marketplace_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/signup", response_model=AuthSignupResponse)
def signup(payload: ProfileCreateRequest, background_tasks: BackgroundTasks):
    try:
        profile = marketplace_store.create_profile(
            role=payload.role,
            first_name=payload.first_name,
            last_name=payload.last_name,
            phone_number=payload.phone_number,
            location=payload.location,
            avatar_url=payload.avatar_url,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    background_tasks.add_task(booking_notifier.welcome, profile)
    token, expires_at = create_access_token(profile_id=profile.id)
    return AuthSignupResponse(profile=profile, access_token=token, expires_at=expires_at)


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    profile_id = payload.profile_id.strip()
    if not profile_id:
        raise HTTPException(status_code=400, detail="profile_id is required")
    if payload.password != auth_config.DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not marketplace_store.get_profile(profile_id):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(profile_id=profile_id)
    return AuthLoginResponse(access_token=token, profile_id=profile_id, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(profile_id: str = Depends(require_authenticated_profile)):
    return AuthMeResponse(profile_id=profile_id)
