"""Scheduled mail service: batched delivery of due messages with retry bookkeeping."""

from .core import ScheduledMailCore
from .errors import DiscoveryError, PersistenceError, SendError, StoreError
from .models import ItemStatus, ScheduledItem, ScheduleRequest, Subscription

__all__ = [
    "ScheduledMailCore",
    "DiscoveryError",
    "PersistenceError",
    "SendError",
    "StoreError",
    "ItemStatus",
    "ScheduledItem",
    "ScheduleRequest",
    "Subscription",
]
