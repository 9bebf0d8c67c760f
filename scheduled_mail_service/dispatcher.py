"""Delivery of due items and the retry/rescheduling state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from .clock import add_months, iso_utc
from .errors import SendError, StoreError
from .logger import get_logger
from .models import ItemStatus, ScheduledItem
from .persistence import ScheduleStore
from .prometheus import SchedulerMetrics
from .sender import Sender

MAX_ATTEMPTS = 3
RETRY_BACKOFF = timedelta(minutes=5)
BATCH_SEPARATOR = "\n---\n"


def apply_success(item: ScheduledItem, now: datetime) -> None:
    """Advance ``item`` after a successful delivery."""
    if item.is_recurring:
        item.next_run = add_months(item.next_run, 1)
        item.last_sent = now
    else:
        item.status = ItemStatus.SENT


def apply_failure(item: ScheduledItem, now: datetime, reason: str) -> None:
    """Record a failed attempt, rescheduling until ``MAX_ATTEMPTS`` is reached."""
    item.attempts += 1
    item.error_message = reason
    if item.attempts < MAX_ATTEMPTS:
        item.next_run = now + RETRY_BACKOFF
    else:
        item.status = ItemStatus.FAILED


def build_combined_message(group: Sequence[ScheduledItem]) -> Tuple[str, str]:
    """Return the subject and numbered body of the message sent for ``group``."""
    subject = f"Your {len(group)} scheduled updates"
    body = BATCH_SEPARATOR.join(
        f"#{idx}\nSubject: {item.subject}\n{item.body}\n"
        for idx, item in enumerate(group, start=1)
    )
    return subject, body


class Dispatcher:
    """Send groups (or single items) and persist the resulting item states."""

    def __init__(
        self,
        store: ScheduleStore,
        sender: Sender,
        *,
        metrics: SchedulerMetrics | None = None,
        logger=None,
        send_timeout: float = 30.0,
        log_delivery_activity: bool = False,
    ):
        self.store = store
        self.sender = sender
        self.metrics = metrics or SchedulerMetrics()
        self.logger = logger or get_logger()
        self.send_timeout = send_timeout
        self.log_delivery_activity = bool(log_delivery_activity)

    async def _send(self, destination: str, subject: str, body: str) -> Optional[str]:
        """Invoke the sender once; return ``None`` on success or the failure reason."""
        try:
            async with asyncio.timeout(self.send_timeout):
                await self.sender.send(destination, subject, body)
        except SendError as exc:
            return exc.reason
        except asyncio.TimeoutError:
            return f"send timed out after {self.send_timeout}s"
        except Exception as exc:
            self.logger.exception("Sender raised an unexpected error for %s", destination)
            return str(exc) or exc.__class__.__name__
        return None

    async def _persist(self, items: Sequence[ScheduledItem]) -> int:
        """Save every item, logging and skipping the ones the store rejects."""
        saved = 0
        for item in items:
            try:
                await self.store.save(item)
            except StoreError as exc:
                self.logger.error("Could not persist item %s: %s", item.id, exc)
                continue
            saved += 1
        return saved

    def _record_outcome(self, items: Sequence[ScheduledItem], reason: Optional[str]) -> None:
        for item in items:
            if reason is None:
                self.metrics.inc_sent(item.is_recurring)
            elif item.status is ItemStatus.FAILED:
                self.metrics.inc_failed()
            else:
                self.metrics.inc_rescheduled()
        if not self.log_delivery_activity:
            return
        for item in items:
            if reason is None:
                self.logger.info(
                    "Delivered item %s to %s (status=%s, next_run=%s)",
                    item.id, item.to, item.status.value, iso_utc(item.next_run),
                )
            elif item.status is ItemStatus.FAILED:
                self.logger.warning(
                    "Item %s failed permanently after %d attempts: %s",
                    item.id, item.attempts, reason,
                )
            else:
                self.logger.info(
                    "Item %s rescheduled to %s (attempt %d/%d): %s",
                    item.id, iso_utc(item.next_run), item.attempts, MAX_ATTEMPTS, reason,
                )

    async def dispatch_group(self, group: Sequence[ScheduledItem], now: datetime) -> bool:
        """Send one combined message for ``group`` and update every member.

        The outcome is shared by the whole group: one sender failure counts as
        a failed attempt for each item. Returns ``True`` when the send succeeded.
        """
        if not group:
            return False
        recipient = group[0].to
        subject, body = build_combined_message(group)
        reason = await self._send(recipient, subject, body)
        self.metrics.inc_batch(reason is None)

        for item in group:
            if reason is None:
                apply_success(item, now)
            else:
                apply_failure(item, now, reason)
        if reason is not None:
            self.logger.error("Failed to send combined email to %s: %s", recipient, reason)

        self._record_outcome(group, reason)
        await self._persist(group)
        return reason is None

    async def deliver_item(self, item: ScheduledItem, now: datetime) -> ScheduledItem:
        """Deliver a single item with its own subject and body.

        Items whose subscription is gone or no longer wants email are marked
        ``skipped`` without contacting the sender. Items that are not
        ``scheduled`` any more are returned untouched. A failed subscription
        lookup counts as a failed attempt, like a failed send.
        """
        if item.status is not ItemStatus.SCHEDULED:
            self.logger.info("Not delivering item %s: status is %s", item.id, item.status.value)
            return item

        subscription = None
        if item.subscription_id:
            try:
                subscription = await self.store.find_subscription(item.subscription_id)
            except StoreError as exc:
                reason = f"subscription lookup failed: {exc}"
                apply_failure(item, now, reason)
                self.logger.error("Could not check subscription for item %s: %s", item.id, exc)
                self._record_outcome([item], reason)
                await self._persist([item])
                return item
        if subscription is None or not subscription.wants_email:
            item.status = ItemStatus.SKIPPED
            self.metrics.inc_skipped()
            self.logger.info("Skipping item %s: subscription %s does not want email", item.id, item.subscription_id)
            await self._persist([item])
            return item

        reason = await self._send(item.to, item.subject, item.body)
        if reason is None:
            apply_success(item, now)
        else:
            apply_failure(item, now, reason)
            self.logger.error("Failed to send email to %s: %s", item.to, reason)

        self._record_outcome([item], reason)
        await self._persist([item])
        return item

    async def dispatch_groups(
        self,
        groups: List[List[ScheduledItem]],
        now: datetime,
        *,
        max_concurrency: int = 1,
    ) -> int:
        """Dispatch independent groups concurrently; return how many were sent."""
        semaphore = asyncio.Semaphore(max(1, int(max_concurrency)))

        async def _run(group: List[ScheduledItem]) -> bool:
            async with semaphore:
                try:
                    return await self.dispatch_group(group, now)
                except Exception:
                    self.logger.exception("Unhandled error dispatching group for %s", group[0].to)
                    return False

        results = await asyncio.gather(*(_run(group) for group in groups))
        return sum(1 for ok in results if ok)
