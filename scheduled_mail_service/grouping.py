"""Batching policies that decide which due items share one outbound message."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List

from .clock import minute_bucket
from .models import ScheduledItem

GroupKey = Callable[[ScheduledItem], str]


def by_recipient_and_minute(item: ScheduledItem) -> str:
    """Items for the same recipient due in the same minute travel together."""
    return f"{item.to}|{minute_bucket(item.next_run)}"


def by_item(item: ScheduledItem) -> str:
    """One group per item, i.e. no batching at all."""
    return item.id


def group_items(
    items: Iterable[ScheduledItem],
    key: GroupKey = by_recipient_and_minute,
) -> List[List[ScheduledItem]]:
    """Partition ``items`` into groups sharing the same ``key``.

    Groups come out in order of first appearance and each group keeps the
    relative order of its items.
    """
    groups: Dict[str, List[ScheduledItem]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return list(groups.values())
