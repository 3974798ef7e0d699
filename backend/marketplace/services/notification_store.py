from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional
from uuid import uuid4

from marketplace.models import NotificationRecord
from marketplace.services.push_sender import PushSender, push_sender

MAX_NOTIFICATIONS_LISTED = 100


class NotificationStore:
    """In-app notification inbox, newest first, mirrored to registered devices."""

    def __init__(self, pusher: PushSender):
        self._lock = Lock()
        self._pusher = pusher
        self._notifications: List[NotificationRecord] = []

    def create(
        self,
        profile_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            profile_id=profile_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
        self._pusher.send_to_profile(
            profile_id,
            title=title,
            body=body,
            data={"notification_id": record.id, "category": category, "deep_link": deep_link or ""},
        )
        return record

    def list_for_profile(self, profile_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.profile_id == profile_id and not (unread_only and n.read)]
        return rows[:MAX_NOTIFICATIONS_LISTED]

    def mark_read(self, profile_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.profile_id == profile_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None

    def mark_all_read(self, profile_id: str) -> int:
        changed = 0
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.profile_id == profile_id and not row.read:
                    self._notifications[idx] = row.model_copy(update={"read": True})
                    changed += 1
        return changed


notification_store = NotificationStore(pusher=push_sender)
