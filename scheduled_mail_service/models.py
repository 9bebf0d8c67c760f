"""Data model for scheduled mail items and the subscriptions that own them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from .clock import ensure_utc, iso_utc


class ItemStatus(str, Enum):
    """Lifecycle state of a scheduled item.

    Attributes:
        SCHEDULED: Waiting for ``next_run``; the only state eligible for pickup.
        SENT: Non-recurring item delivered successfully (terminal).
        SKIPPED: Owning subscription missing or opted out (terminal).
        FAILED: Delivery failed ``MAX_ATTEMPTS`` times (terminal).
    """

    SCHEDULED = "scheduled"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ScheduledItem:
    """A message waiting to be delivered to ``to`` once ``next_run`` is reached.

    Attributes:
        id: Opaque identifier.
        subscription_id: Owning subscription, used for lookups only.
        to: Delivery address.
        subject: Message subject line.
        body: Plain-text message body.
        scheduled_at: Originally requested send time.
        next_run: Time at which the item becomes due.
        is_recurring: Advance ``next_run`` by a month after each delivery.
        last_sent: Last successful delivery of a recurring item.
        status: Current :class:`ItemStatus`.
        attempts: Number of failed delivery attempts.
        error_message: Detail of the last failure.
    """

    to: str
    subject: str
    body: str
    scheduled_at: datetime
    next_run: datetime
    subscription_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    is_recurring: bool = False
    last_sent: Optional[datetime] = None
    status: ItemStatus = ItemStatus.SCHEDULED
    attempts: int = 0
    error_message: Optional[str] = None

    def __post_init__(self) -> None:
        self.scheduled_at = ensure_utc(self.scheduled_at)
        self.next_run = ensure_utc(self.next_run)
        if self.last_sent is not None:
            self.last_sent = ensure_utc(self.last_sent)
        self.status = ItemStatus(self.status)

    def is_due(self, now: datetime) -> bool:
        """Return ``True`` when the item is scheduled and ``next_run`` has passed."""
        return self.status is ItemStatus.SCHEDULED and self.next_run <= ensure_utc(now)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the item for command and API responses."""
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "scheduled_at": iso_utc(self.scheduled_at),
            "next_run": iso_utc(self.next_run),
            "is_recurring": self.is_recurring,
            "last_sent": iso_utc(self.last_sent),
            "status": self.status.value,
            "attempts": self.attempts,
            "error_message": self.error_message,
        }


@dataclass
class Subscription:
    """Owner of scheduled items; ``send_email`` tells whether it still wants mail."""

    id: str
    send_email: bool = True

    @property
    def wants_email(self) -> bool:
        return bool(self.send_email)


@dataclass
class ScheduleRequest:
    """Creation request for a one-off scheduled email.

    ``send_email`` is the caller's delivery flag: when false nothing is created.
    """

    to: str
    subject: str
    body: str
    scheduled_at: datetime
    subscription_id: Optional[str] = None
    send_email: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ScheduleRequest:
        scheduled_at = data["scheduled_at"]
        if isinstance(scheduled_at, str):
            scheduled_at = datetime.fromisoformat(scheduled_at.replace("Z", "+00:00"))
        return cls(
            to=data["to"],
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            scheduled_at=ensure_utc(scheduled_at),
            subscription_id=data.get("subscription_id"),
            send_email=bool(data.get("send_email", False)),
        )
