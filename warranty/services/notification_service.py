"""
In-process notification inbox for warranty events.

Publish-subscribe: claim and batch services publish through the narrow
``notify(recipient, template_id, payload)`` sink shape; the inbox keeps the
latest notifications per user for the UI. When a delivery webhook is
configured, notifications are forwarded there as well.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from threading import Lock

from warranty.config import Config
from warranty.models import CLAIM_STATUS_LABELS, ClaimStatus
from warranty.observability import increment_counter, record_event
from warranty.services.collaborators import (
    HttpNotificationSink,
    NotificationSink,
    dispatch_notification,
)


@dataclass
class Notification:
    """Represents a single notification."""
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


# template_id -> (notification type, title, message, reference key, reference type)
_TEMPLATES: Dict[str, tuple[str, str, str, str, str]] = {
    "claim_status_changed": (
        "claim_status",
        "Claim {claim_number} Updated",
        "Your warranty claim status changed from {old_label} to {new_label}.",
        "claim_id",
        "warranty_claim",
    ),
    "claim_submitted": (
        "claim_status",
        "Claim {claim_number} Received",
        "We received your warranty claim and will review it shortly.",
        "claim_id",
        "warranty_claim",
    ),
    "batch_completed": (
        "batch_status",
        "Batch {batch_number} Completed",
        "{successful_count} warranty barcodes were generated.",
        "batch_id",
        "barcode_batch",
    ),
    "ticket_assigned": (
        "repair_ticket",
        "Repair Ticket {ticket_number} Assigned",
        "A repair ticket was assigned to you.",
        "ticket_id",
        "repair_ticket",
    ),
    "customer_approval_requested": (
        "repair_ticket",
        "Approval Needed for Claim {claim_number}",
        "The repair cost of {total_cost} needs your approval before we proceed.",
        "claim_id",
        "warranty_claim",
    ),
}


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return ""


class NotificationService:
    """
    In-memory notification inbox.

    Singleton so that every request handler and background batch run sees the
    same per-user state.
    """

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._notification_counter: int = 0
        self._max_notifications_per_user: int = 50
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def notify(self, recipient: int, template_id: str, payload: Dict[str, Any]) -> None:
        notification_type, title, message, reference_key, reference_type = _TEMPLATES.get(
            template_id,
            (template_id, template_id.replace("_", " ").title(), "", "", ""),
        )
        values = _SafeFormat(payload)
        self.add_notification(
            user_id=recipient,
            notification_type=notification_type,
            title=title.format_map(values),
            message=message.format_map(values),
            reference_id=payload.get(reference_key) if reference_key else None,
            reference_type=reference_type or None,
            payload=payload,
        )

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        with self._lock:
            self._notification_counter += 1
            notification_id = f"notif_{self._notification_counter}_{int(datetime.now().timestamp())}"

            notification = Notification(
                id=notification_id,
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                reference_id=reference_id,
                reference_type=reference_type,
                payload=dict(payload or {}),
            )

            # Most recent first
            self._notifications[user_id].insert(0, notification)
            if len(self._notifications[user_id]) > self._max_notifications_per_user:
                self._notifications[user_id] = self._notifications[user_id][:self._max_notifications_per_user]

            increment_counter(
                "notifications_created_total",
                labels={"type": notification_type},
            )
            self.logger.info("Notification created for user %d: %s", user_id, title)
            return notification

    def get_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        notifications = self._notifications.get(user_id, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        notifications = self._notifications.get(user_id, [])
        return sum(1 for n in notifications if not n.read)

    def mark_as_read(self, user_id: int, notification_id: str) -> bool:
        for notification in self._notifications.get(user_id, []):
            if notification.id == notification_id:
                notification.read = True
                notification.read_at = datetime.now(timezone.utc)
                return True
        return False

    def mark_all_as_read(self, user_id: int) -> int:
        count = 0
        now = datetime.now(timezone.utc)
        for notification in self._notifications.get(user_id, []):
            if not notification.read:
                notification.read = True
                notification.read_at = now
                count += 1
        return count

    def clear_notifications(self, user_id: Optional[int] = None) -> None:
        """Clear one user's inbox, or every inbox when no user is given."""
        with self._lock:
            if user_id is None:
                self._notifications.clear()
            else:
                self._notifications[user_id] = []


class FanOutNotificationSink:
    """Delivers to each sink in turn; a failing sink does not stop the rest."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = list(sinks)

    def notify(self, recipient: int, template_id: str, payload: Dict[str, Any]) -> None:
        for sink in self.sinks:
            dispatch_notification(sink, recipient, template_id, payload)


def build_notification_sink(config: type[Config] = Config) -> NotificationSink:
    inbox = NotificationService()
    if not config.NOTIFICATION_WEBHOOK_URL:
        return inbox
    return FanOutNotificationSink(
        [inbox, HttpNotificationSink(config.NOTIFICATION_WEBHOOK_URL, config.COLLABORATOR_TIMEOUT_SECONDS)]
    )


def publish_claim_status_change(
    sink: NotificationSink,
    claim_id: int,
    customer_id: int,
    old_status: str,
    new_status: str,
    claim_number: Optional[str] = None,
) -> bool:
    """
    Publish a claim status change to the owning customer.

    Best effort: a failed delivery is logged and counted, never raised.
    """
    old_label = CLAIM_STATUS_LABELS.get(ClaimStatus(old_status), old_status) if old_status else ""
    new_label = CLAIM_STATUS_LABELS.get(ClaimStatus(new_status), new_status)

    record_event(
        "claim_status_changed",
        {
            "claim_id": claim_id,
            "customer_id": customer_id,
            "old_status": old_status,
            "new_status": new_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    return dispatch_notification(
        sink,
        customer_id,
        "claim_status_changed",
        {
            "claim_id": claim_id,
            "claim_number": claim_number or f"#{claim_id}",
            "old_status": old_status,
            "new_status": new_status,
            "old_label": old_label,
            "new_label": new_label,
        },
    )
