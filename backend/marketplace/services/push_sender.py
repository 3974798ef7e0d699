import logging
import os
from threading import Lock
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class PushSender:
    """Device registry plus Firebase Cloud Messaging delivery.

    Push stays disabled unless a service-account file is configured; in-app
    notifications work either way.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = (credentials_path or "").strip()
        self._device_tokens: Dict[str, Set[str]] = {}
        self._initialized = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._messaging is not None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            if not self._credentials_path:
                logger.info("Push delivery disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except Exception:
                logger.exception("Push delivery disabled: firebase-admin import failed")
                return
            try:
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self._credentials_path))
                self._messaging = messaging
                logger.info("Push delivery initialized")
            except Exception:
                logger.exception("Push delivery disabled: Firebase init failed")

    def register(self, profile_id: str, device_token: str) -> None:
        token = device_token.strip()
        if not token:
            return
        with self._lock:
            self._device_tokens.setdefault(profile_id, set()).add(token)

    def tokens_for(self, profile_id: str) -> List[str]:
        with self._lock:
            return sorted(self._device_tokens.get(profile_id, set()))

    def send_to_profile(self, profile_id: str, title: str, body: str, data: Dict[str, str]) -> int:
        tokens = self.tokens_for(profile_id)
        if not tokens or not self.enabled:
            return 0
        assert self._messaging is not None
        try:
            batch = self._messaging.send_each_for_multicast(
                self._messaging.MulticastMessage(
                    notification=self._messaging.Notification(title=title, body=body),
                    tokens=tokens,
                    data=data,
                )
            )
        except Exception:
            logger.exception("Push send failed for profile %s", profile_id)
            return 0

        stale: List[str] = []
        for token, response in zip(tokens, batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if "registration token" in error_text or "invalid argument" in error_text:
                stale.append(token)
        if stale:
            with self._lock:
                current = self._device_tokens.get(profile_id, set())
                current.difference_update(stale)
            logger.info("Dropped %d stale device tokens for profile %s", len(stale), profile_id)
        return batch.success_count


push_sender = PushSender(credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH"))
