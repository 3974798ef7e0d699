import base64
import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_HOURS = 24


def _read_ttl_hours() -> int:
    raw = os.getenv("AUTH_TOKEN_TTL_HOURS", str(DEFAULT_TOKEN_TTL_HOURS))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid AUTH_TOKEN_TTL_HOURS=%r", raw)
        return DEFAULT_TOKEN_TTL_HOURS
    if value <= 0:
        logger.warning("Ignoring non-positive AUTH_TOKEN_TTL_HOURS=%r", raw)
        return DEFAULT_TOKEN_TTL_HOURS
    return value


TOKEN_TTL_HOURS = _read_ttl_hours()
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() in {"1", "true", "yes"}
DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "marketplace-demo")
MODERATION_TOKEN = os.getenv("MODERATION_TOKEN", "").strip()
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(profile_id: str) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{profile_id}|{int(expiry.timestamp())}".encode("utf-8")
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    return f"{_b64url(payload)}.{_b64url(sig)}", expiry.isoformat()


def verify_access_token(token: str) -> Optional[str]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        profile_id, expiry_ts = payload.decode("utf-8").split("|", 1)
        expires_at = int(expiry_ts)
    except ValueError:
        return None
    expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    if not hmac.compare_digest(sent_sig, expected_sig):
        return None
    if datetime.now(timezone.utc).timestamp() > expires_at:
        return None
    return profile_id


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_profile(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_authenticated_profile(authorization: Optional[str] = Header(default=None)) -> str:
    profile_id = resolve_request_profile(authorization)
    if not profile_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return profile_id


def assert_actor_authorized(
    actor_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    token_profile = resolve_request_profile(authorization)
    if not token_profile:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_profile != actor_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token profile does not match actor")


def assert_moderator(moderation_token: Optional[str]) -> None:
    if not MODERATION_TOKEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Moderation is not enabled")
    if not moderation_token or not hmac.compare_digest(moderation_token, MODERATION_TOKEN):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid moderation token")
