"""SQLite backed persistence used by the mail scheduler."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .clock import from_epoch_us, to_epoch_us
from .errors import DiscoveryError, PersistenceError, StoreError
from .models import ItemStatus, ScheduledItem, Subscription

ITEM_COLUMNS = (
    "id",
    "subscription_id",
    "recipient",
    "subject",
    "body",
    "scheduled_us",
    "next_run_us",
    "is_recurring",
    "last_sent_us",
    "status",
    "attempts",
    "error",
)


class ScheduleStore:
    """Interface implemented by storage backends for scheduled items."""

    async def find_due(self, now: datetime) -> List[ScheduledItem]:
        """Return scheduled items whose ``next_run`` is at or before ``now``."""
        raise NotImplementedError

    async def find_by_statuses(self, statuses: Iterable[ItemStatus]) -> List[ScheduledItem]:
        """Return items in any of ``statuses`` ordered by ``next_run``."""
        raise NotImplementedError

    async def save(self, item: ScheduledItem) -> None:
        """Persist the full current state of ``item``."""
        raise NotImplementedError

    async def insert_item(self, item: ScheduledItem) -> ScheduledItem:
        """Store a new item."""
        raise NotImplementedError

    async def get_item(self, item_id: str) -> Optional[ScheduledItem]:
        raise NotImplementedError

    async def delete_by_subscription(self, subscription_id: str) -> int:
        """Remove every item owned by ``subscription_id``, returning the count."""
        raise NotImplementedError

    async def find_subscription(self, subscription_id: str) -> Optional[Subscription]:
        raise NotImplementedError

    async def add_subscription(self, subscription: Subscription) -> None:
        raise NotImplementedError


class Persistence(ScheduleStore):
    """Helper class responsible for reading and writing scheduler state."""

    def __init__(self, db_path: str = "/data/scheduled_mail.db"):
        """Persist data to the SQLite file at ``db_path``.

        Every operation opens its own connection, so an in-memory database
        would be empty on the next call and is refused.
        """
        if not db_path or db_path == ":memory:" or db_path.startswith("file::memory:"):
            raise ValueError("Persistence needs a database file path, in-memory databases are not supported")
        self.db_path = db_path

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    send_email INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_items (
                    id TEXT PRIMARY KEY,
                    subscription_id TEXT,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL DEFAULT '',
                    body TEXT NOT NULL DEFAULT '',
                    scheduled_us INTEGER NOT NULL,
                    next_run_us INTEGER NOT NULL,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    last_sent_us INTEGER,
                    status TEXT NOT NULL DEFAULT 'scheduled',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_due ON scheduled_items(status, next_run_us)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_subscription ON scheduled_items(subscription_id)"
            )
            await db.commit()

    # Rows ---------------------------------------------------------------------
    @staticmethod
    def _decode_item_row(row: Tuple[Any, ...], columns: Sequence[str]) -> ScheduledItem:
        data = dict(zip(columns, row))
        return ScheduledItem(
            id=data["id"],
            subscription_id=data["subscription_id"],
            to=data["recipient"],
            subject=data["subject"],
            body=data["body"],
            scheduled_at=from_epoch_us(data["scheduled_us"]),
            next_run=from_epoch_us(data["next_run_us"]),
            is_recurring=bool(data["is_recurring"]),
            last_sent=from_epoch_us(data["last_sent_us"]),
            status=ItemStatus(data["status"]),
            attempts=int(data["attempts"] or 0),
            error_message=data["error"],
        )

    @staticmethod
    def _encode_item(item: ScheduledItem) -> Tuple[Any, ...]:
        return (
            item.id,
            item.subscription_id,
            item.to,
            item.subject,
            item.body,
            to_epoch_us(item.scheduled_at),
            to_epoch_us(item.next_run),
            1 if item.is_recurring else 0,
            to_epoch_us(item.last_sent),
            item.status.value,
            int(item.attempts),
            item.error_message,
        )

    async def _select_items(self, where: str, params: Tuple[Any, ...]) -> List[ScheduledItem]:
        query = f"""
            SELECT {", ".join(ITEM_COLUMNS)}
            FROM scheduled_items
            WHERE {where}
            ORDER BY next_run_us ASC, rowid ASC
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_item_row(row, cols) for row in rows]

    # Scheduled items ----------------------------------------------------------
    async def insert_item(self, item: ScheduledItem) -> ScheduledItem:
        """Insert a new item; an existing id is rejected with :class:`StoreError`."""
        placeholders = ", ".join("?" for _ in ITEM_COLUMNS)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"INSERT INTO scheduled_items ({', '.join(ITEM_COLUMNS)}) VALUES ({placeholders})",
                    self._encode_item(item),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to insert item {item.id}: {exc}") from exc
        return item

    async def find_due(self, now: datetime) -> List[ScheduledItem]:
        """Return items eligible for dispatch at ``now``."""
        try:
            return await self._select_items(
                "status = ? AND next_run_us <= ?",
                (ItemStatus.SCHEDULED.value, to_epoch_us(now)),
            )
        except aiosqlite.Error as exc:
            raise DiscoveryError(f"Failed to fetch due items: {exc}") from exc

    async def find_by_statuses(self, statuses: Iterable[ItemStatus]) -> List[ScheduledItem]:
        """Return items in the given statuses ordered by ``next_run``."""
        values = [ItemStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        try:
            return await self._select_items(f"status IN ({placeholders})", tuple(values))
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to list items: {exc}") from exc

    async def get_item(self, item_id: str) -> Optional[ScheduledItem]:
        """Fetch a single item or ``None`` when it does not exist."""
        try:
            items = await self._select_items("id = ?", (item_id,))
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to fetch item {item_id}: {exc}") from exc
        return items[0] if items else None

    async def save(self, item: ScheduledItem) -> None:
        """Write back the mutable state of an existing item."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE scheduled_items
                    SET next_run_us=?, last_sent_us=?, status=?, attempts=?, error=?,
                        updated_at=CURRENT_TIMESTAMP
                    WHERE id=?
                    """,
                    (
                        to_epoch_us(item.next_run),
                        to_epoch_us(item.last_sent),
                        item.status.value,
                        int(item.attempts),
                        item.error_message,
                        item.id,
                    ),
                )
                await db.commit()
                updated = cursor.rowcount
        except aiosqlite.Error as exc:
            raise PersistenceError(item.id, str(exc)) from exc
        if updated == 0:
            raise PersistenceError(item.id, "item no longer exists")

    async def delete_by_subscription(self, subscription_id: str) -> int:
        """Delete every item linked to the given subscription."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM scheduled_items WHERE subscription_id=?", (subscription_id,)
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to delete items for subscription {subscription_id}: {exc}") from exc

    # Subscriptions ------------------------------------------------------------
    async def add_subscription(self, subscription: Subscription) -> None:
        """Insert or overwrite a subscription."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT OR REPLACE INTO subscriptions (id, send_email) VALUES (?, ?)",
                    (subscription.id, 1 if subscription.send_email else 0),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to store subscription {subscription.id}: {exc}") from exc

    async def find_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Return the subscription or ``None`` when unknown."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    "SELECT id, send_email FROM subscriptions WHERE id=?", (subscription_id,)
                ) as cur:
                    row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to fetch subscription {subscription_id}: {exc}") from exc
        if not row:
            return None
        return Subscription(id=row[0], send_email=bool(row[1]))
