"""Core orchestration logic for the scheduled mail dispatcher."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, Iterable, List, Optional, Set

from .clock import Clock, utc_now
from .dispatcher import Dispatcher
from .errors import DiscoveryError, StoreError
from .grouping import GroupKey, by_recipient_and_minute, group_items
from .logger import get_logger
from .models import ItemStatus, ScheduledItem, ScheduleRequest, Subscription
from .persistence import Persistence, ScheduleStore
from .prometheus import SchedulerMetrics
from .sender import Sender

DEFAULT_TICK_INTERVAL = 60.0
LISTED_STATUSES = (ItemStatus.SCHEDULED, ItemStatus.SENT)


class ScheduledMailCore:
    """Periodically pick due items from storage and hand them to the dispatcher."""

    def __init__(
        self,
        *,
        sender: Sender,
        db_path: str = "/data/scheduled_mail.db",
        store: ScheduleStore | None = None,
        logger=None,
        metrics: SchedulerMetrics | None = None,
        clock: Clock = utc_now,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        test_mode: bool = False,
        max_concurrent_groups: int = 4,
        send_timeout: float = 30.0,
        group_key: GroupKey = by_recipient_and_minute,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators and ticker state."""
        self.logger = logger or get_logger()
        self.metrics = metrics or SchedulerMetrics()
        self.persistence = store or Persistence(db_path)
        self.sender = sender
        self.clock = clock
        self.dispatcher = Dispatcher(
            self.persistence,
            sender,
            metrics=self.metrics,
            logger=self.logger,
            send_timeout=send_timeout,
            log_delivery_activity=log_delivery_activity,
        )
        self._group_key = group_key
        self._max_concurrent_groups = max(1, int(max_concurrent_groups))
        self._test_mode = bool(test_mode)
        self._tick_interval = math.inf if self._test_mode else max(0.05, float(tick_interval))

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._pass_lock = asyncio.Lock()
        self._task_ticker: Optional[asyncio.Task] = None
        self._task_cleanup: Optional[asyncio.Task] = None
        self._pass_tasks: Set[asyncio.Task] = set()

    async def init(self) -> None:
        """Initialise persistence."""
        init_db = getattr(self.persistence, "init_db", None)
        if init_db is not None:
            await init_db()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the ticker and maintenance tasks."""
        self.logger.debug("Starting ScheduledMailCore...")
        await self.init()
        self._stop.clear()
        self._task_ticker = asyncio.create_task(self._ticker_loop(), name="schedule-ticker")
        pool = getattr(self.sender, "pool", None)
        if pool is not None and not self._test_mode:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(pool), name="smtp-cleanup-loop")
        self.logger.debug("Background tasks created")

    async def stop(self) -> None:
        """Stop the ticker and wait for in-flight passes to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task_cleanup:
            self._task_cleanup.cancel()
        await asyncio.gather(
            *(task for task in [self._task_ticker, self._task_cleanup] if task),
            *self._pass_tasks,
            return_exceptions=True,
        )

    # -------------------------------------------------------------------- ticker
    async def _ticker_loop(self) -> None:
        """Fire a processing pass every ``tick_interval`` seconds or on wake-up."""
        self.logger.debug("Schedule ticker started")
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                self.logger.info("First iteration in test mode, waiting for wakeup")
                await self._wait_for_wakeup(self._tick_interval)
            first_iteration = False
            if self._stop.is_set():
                break
            task = asyncio.create_task(self._run_pass_safely(), name="schedule-pass")
            self._pass_tasks.add(task)
            task.add_done_callback(self._pass_tasks.discard)
            await self._wait_for_wakeup(self._tick_interval)

    async def _run_pass_safely(self) -> None:
        try:
            await self.run_pass()
        except Exception as exc:
            self.metrics.inc_pass_error()
            self.logger.exception("Unhandled error in processing pass: %s", exc)

    async def _cleanup_loop(self, pool) -> None:
        """Background coroutine that keeps pooled SMTP connections healthy."""
        while not self._stop.is_set():
            await asyncio.sleep(150)
            await pool.cleanup()

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the ticker while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # -------------------------------------------------------------------- passes
    async def run_pass(self) -> int:
        """Process every item due now; return how many items were handled.

        A pass that starts while another one still holds the lock is skipped,
        so an item is never picked up twice before its new state is saved.
        """
        if self._pass_lock.locked():
            self.logger.info("Previous pass still running, skipping this tick")
            return 0
        async with self._pass_lock:
            now = self.clock()
            try:
                due = await self.persistence.find_due(now)
            except DiscoveryError as exc:
                self.metrics.inc_pass_error()
                self.logger.error("Could not fetch due items, retrying next tick: %s", exc)
                return 0
            self.metrics.set_due(len(due))
            if not due:
                return 0

            groups = group_items(due, self._group_key)
            self.logger.info("Found %d due items in %d groups", len(due), len(groups))
            sent = await self.dispatcher.dispatch_groups(
                groups, now, max_concurrency=self._max_concurrent_groups
            )
            self.logger.debug("Pass finished: %d/%d groups sent", sent, len(groups))
            return len(due)

    # ------------------------------------------------------------------ requests
    async def schedule_email(self, request: ScheduleRequest) -> Optional[ScheduledItem]:
        """Create a one-off item, or return ``None`` when delivery was not requested."""
        if not request.send_email:
            return None
        item = ScheduledItem(
            subscription_id=request.subscription_id,
            to=request.to,
            subject=request.subject,
            body=request.body,
            scheduled_at=request.scheduled_at,
            next_run=request.scheduled_at,
            is_recurring=False,
            status=ItemStatus.SCHEDULED,
            attempts=0,
        )
        try:
            return await self.persistence.insert_item(item)
        except StoreError:
            self.logger.exception("Error scheduling email for %s", request.to)
            raise

    async def list_scheduled(self, statuses: Iterable[ItemStatus] = LISTED_STATUSES) -> List[ScheduledItem]:
        """Return items in ``statuses`` ordered by ``next_run``; empty on storage errors."""
        try:
            return await self.persistence.find_by_statuses(statuses)
        except StoreError as exc:
            self.logger.error("Error fetching scheduled emails: %s", exc)
            return []

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            self._wake_event.set()
            return {"ok": True}
        if cmd == "scheduleEmail":
            try:
                request = ScheduleRequest.from_dict(payload)
            except (KeyError, TypeError, ValueError) as exc:
                return {"ok": False, "error": f"invalid request: {exc}"}
            item = await self.schedule_email(request)
            return {"ok": True, "item": item.to_dict() if item else None}
        if cmd == "listScheduled":
            statuses = payload.get("statuses") or LISTED_STATUSES
            try:
                statuses = [ItemStatus(s) for s in statuses]
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            items = await self.list_scheduled(statuses)
            return {"ok": True, "items": [item.to_dict() for item in items]}
        if cmd == "deleteBySubscription":
            subscription_id = payload.get("subscription_id")
            if not subscription_id:
                return {"ok": False, "error": "missing 'subscription_id'"}
            removed = await self.persistence.delete_by_subscription(subscription_id)
            return {"ok": True, "removed": removed}
        if cmd == "addSubscription":
            subscription_id = payload.get("id")
            if not subscription_id:
                return {"ok": False, "error": "missing 'id'"}
            await self.persistence.add_subscription(
                Subscription(id=subscription_id, send_email=bool(payload.get("send_email", True)))
            )
            return {"ok": True}
        if cmd == "sendItem":
            item_id = payload.get("id")
            if not item_id:
                return {"ok": False, "error": "missing 'id'"}
            item = await self.persistence.get_item(item_id)
            if item is None:
                return {"ok": False, "error": f"item '{item_id}' not found"}
            if item.status is not ItemStatus.SCHEDULED:
                return {"ok": False, "error": f"item '{item_id}' is {item.status.value}"}
            item = await self.dispatcher.deliver_item(item, self.clock())
            return {"ok": True, "item": item.to_dict()}
        return {"ok": False, "error": "unknown command"}
