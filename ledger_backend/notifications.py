from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta
import hashlib
import threading
from typing import Callable, List, Union

from ledger_backend.errors import ValidationFailure
from ledger_backend.logging_config import get_logger
from ledger_backend.models import NotificationEvent, Suppressed, validate_notification_kind
from ledger_backend.store import Repository, utcnow

logger = get_logger("ledger.notifications")

DEFAULT_COOLDOWN = timedelta(hours=24)

NotifyResult = Union[NotificationEvent, Suppressed]


def dedup_key(owner_id: int, kind: str, fingerprint: str) -> str:
    raw = "\x1f".join((str(owner_id), kind, fingerprint))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def goal_fingerprint(goal_id: int) -> str:
    return f"goal:{goal_id}"


def budget_breach_fingerprint(category: str, period: str) -> str:
    return f"budget:{category}:{period}"


def recurring_fingerprint(entry_id: int, occurrence: Union[date, datetime]) -> str:
    return f"recurring:{entry_id}:{occurrence.isoformat()}"


def anomaly_fingerprint(category: str, period: str) -> str:
    return f"anomaly:{category}:{period}"


class NotificationDispatcher:
    """Single entry point for creating notifications.

    A call is suppressed when a notification with the same dedup key is
    still unread or was created within the cooldown window. Delivery beyond
    the notification store (email, push) is left to whoever reads it.
    """

    def __init__(
        self,
        store: Repository[NotificationEvent],
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cooldown = cooldown
        self.clock = clock
        self._lock = threading.Lock()

    def notify(self, owner_id: int, kind: str, message: str, fingerprint: str) -> NotifyResult:
        normalized_kind = validate_notification_kind(kind)
        text = (message or "").strip()
        if not text:
            raise ValidationFailure("Notification message required.")
        if not fingerprint:
            raise ValidationFailure("Notification fingerprint required.")

        key = dedup_key(owner_id, normalized_kind, fingerprint)
        with self._lock:
            now = self.clock()
            for existing in self.store.find_by_owner(owner_id, dedup_key=key):
                if not existing.read or existing.created_at >= now - self.cooldown:
                    logger.debug(
                        "Suppressed duplicate %s notification",
                        normalized_kind,
                        extra={"owner_id": owner_id, "action": "notify", "resource": key},
                    )
                    return Suppressed(dedup_key=key, existing_id=existing.id)

            event = self.store.create(
                NotificationEvent(
                    kind=normalized_kind,
                    owner_id=owner_id,
                    message=text,
                    dedup_key=key,
                    created_at=now,
                )
            )
        logger.info(
            "Created %s notification %s",
            normalized_kind,
            event.id,
            extra={"owner_id": owner_id, "action": "notify", "resource": "notification"},
        )
        return event

    def list_for_owner(self, owner_id: int) -> List[NotificationEvent]:
        events = self.store.find_by_owner(owner_id)
        return sorted(events, key=lambda event: (event.created_at, event.id or 0), reverse=True)

    def mark_read(self, owner_id: int, notification_id: int) -> NotificationEvent:
        event = self.store.find_by_id_and_owner(notification_id, owner_id)
        if event.read:
            return event
        return self.store.update_by_id_and_owner(notification_id, owner_id, replace(event, read=True))
