import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest
import pytest_asyncio

from scheduled_mail_service.core import ScheduledMailCore
from scheduled_mail_service.errors import PersistenceError, SendError
from scheduled_mail_service.models import ScheduledItem
from scheduled_mail_service.persistence import Persistence
from scheduled_mail_service.prometheus import SchedulerMetrics

T = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class DummySender:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[str] = None
        self.raise_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def send(self, destination, subject, body):
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_with is not None:
            raise SendError(self.fail_with)
        self.sent.append({"to": destination, "subject": subject, "body": body})


class RecordingStore(Persistence):
    """Real SQLite store that counts writes and can refuse to save given ids."""

    def __init__(self, db_path: str):
        super().__init__(db_path)
        self.saves: List[str] = []
        self.broken_ids: Set[str] = set()

    async def save(self, item):
        if item.id in self.broken_ids:
            raise PersistenceError(item.id, "disk full")
        await super().save(item)
        self.saves.append(item.id)


def make_item(item_id, next_run=T, **kwargs) -> ScheduledItem:
    kwargs.setdefault("to", "x@y.com")
    kwargs.setdefault("subject", f"subject {item_id}")
    kwargs.setdefault("body", f"body {item_id}")
    return ScheduledItem(id=item_id, scheduled_at=next_run, next_run=next_run, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return DummySender()


@pytest_asyncio.fixture
async def store(tmp_path):
    s = RecordingStore(str(tmp_path / "scheduler.db"))
    await s.init_db()
    return s


@pytest.fixture
def core(store, sender, clock):
    return ScheduledMailCore(
        sender=sender,
        store=store,
        clock=clock,
        metrics=SchedulerMetrics(),
        test_mode=True,
    )
