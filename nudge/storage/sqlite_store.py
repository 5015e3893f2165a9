"""Durable reminder storage on SQLite (aiosqlite)."""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Collection, Dict, Iterable, List, Optional

import aiosqlite

from nudge.models.reminder import PushKeys, PushSubscription, Reminder, ReminderStatus
from nudge.errors import BackendUnavailable
from nudge.storage.base import ReminderBackend
from nudge.utils.logger import log_debug, log_info


SCHEMA = """
CREATE TABLE IF NOT EXISTS reminders (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    due_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    voice_enabled INTEGER NOT NULL DEFAULT 1,
    repeat_count INTEGER NOT NULL DEFAULT 1,
    snooze_count INTEGER NOT NULL DEFAULT 0,
    last_snoozed_at TEXT,
    notified_at TEXT,
    completed_at TEXT,
    dismissed_by TEXT,
    original_input TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reminders_status ON reminders (status);
CREATE INDEX IF NOT EXISTS idx_reminders_created_at ON reminders (created_at);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    endpoint TEXT PRIMARY KEY,
    p256dh TEXT NOT NULL,
    auth TEXT NOT NULL,
    user_agent TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_used_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_active ON push_subscriptions (is_active);
"""

REMINDER_COLUMNS = (
    "id", "text", "due_at", "status", "voice_enabled", "repeat_count", "snooze_count",
    "last_snoozed_at", "notified_at", "completed_at", "dismissed_by", "original_input",
    "created_at",
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _from_db(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_reminder(row: aiosqlite.Row) -> Reminder:
    return Reminder(
        id=row["id"],
        text=row["text"],
        due_at=_from_db(row["due_at"]),
        status=ReminderStatus(row["status"]),
        voice_enabled=bool(row["voice_enabled"]),
        repeat_count=row["repeat_count"],
        snooze_count=row["snooze_count"],
        last_snoozed_at=_from_db(row["last_snoozed_at"]),
        notified_at=_from_db(row["notified_at"]),
        completed_at=_from_db(row["completed_at"]),
        dismissed_by=row["dismissed_by"],
        original_input=row["original_input"],
        created_at=_from_db(row["created_at"]),
    )


def _row_to_subscription(row: aiosqlite.Row) -> PushSubscription:
    return PushSubscription(
        endpoint=row["endpoint"],
        keys=PushKeys(p256dh=row["p256dh"], auth=row["auth"]),
        user_agent=row["user_agent"],
        created_at=_from_db(row["created_at"]),
        last_used_at=_from_db(row["last_used_at"]),
        is_active=bool(row["is_active"]),
    )


class SQLiteBackend(ReminderBackend):
    """Reminder storage in a local SQLite database.

    Constraint violations raise ``ValueError``; every other SQLite or
    connection error is reported as ``BackendUnavailable``.
    """

    name = "sqlite"

    def __init__(self, db_path: str, busy_timeout_seconds: float = 3.0):
        """Initialize the backend.

        Args:
            db_path: Database file path (":memory:" for a throwaway database)
            busy_timeout_seconds: How long SQLite waits on a locked database
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout_seconds
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open the database and create the schema if needed."""
        if self._conn is not None:
            return

        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir and self.db_path != ":memory:":
                os.makedirs(db_dir, exist_ok=True)

            self._conn = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
        except (aiosqlite.Error, OSError, ValueError) as e:
            self._conn = None
            raise BackendUnavailable(f"Cannot open SQLite database {self.db_path}: {e}") from e

        log_info(f"SQLite reminder store ready at {self.db_path}", component="store")

    async def close(self) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.close()
        except (aiosqlite.Error, ValueError) as e:
            raise BackendUnavailable(f"Error closing SQLite database: {e}") from e
        finally:
            self._conn = None
        log_debug("SQLite reminder store closed", component="store")

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise BackendUnavailable("SQLite database is not connected")
        return self._conn

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a write statement and commit. Returns the affected row count."""
        conn = self._connection()
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                rowcount = cursor.rowcount
            await conn.commit()
            return rowcount
        except aiosqlite.IntegrityError as e:
            # Constraint violations are caller errors
            raise ValueError(f"SQLite rejected write: {e}") from e
        except (aiosqlite.Error, ValueError) as e:
            raise BackendUnavailable(f"SQLite write failed: {e}") from e

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[aiosqlite.Row]:
        conn = self._connection()
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
        except (aiosqlite.Error, ValueError) as e:
            raise BackendUnavailable(f"SQLite read failed: {e}") from e

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def ping(self) -> None:
        if self._conn is None:
            await self.connect()
        await self._fetchone("SELECT 1")

    # Reminders

    async def insert(self, reminder: Reminder) -> Reminder:
        values = reminder.model_dump()
        placeholders = ", ".join("?" for _ in REMINDER_COLUMNS)
        await self._execute(
            f"INSERT INTO reminders ({', '.join(REMINDER_COLUMNS)}) VALUES ({placeholders})",
            [_to_db(values[column]) for column in REMINDER_COLUMNS],
        )
        return reminder

    async def get(self, reminder_id: str) -> Optional[Reminder]:
        row = await self._fetchone("SELECT * FROM reminders WHERE id = ?", (reminder_id,))
        return _row_to_reminder(row) if row else None

    @staticmethod
    def _assignments(changes: Dict) -> tuple:
        unknown = set(changes) - set(REMINDER_COLUMNS)
        if unknown or "id" in changes:
            raise ValueError(f"Cannot update reminder fields: {sorted(unknown | ({'id'} & set(changes)))}")
        columns = list(changes)
        clause = ", ".join(f"{column} = ?" for column in columns)
        return clause, [_to_db(changes[column]) for column in columns]

    async def update(self, reminder_id: str, changes: Dict) -> Optional[Reminder]:
        if changes:
            clause, params = self._assignments(changes)
            affected = await self._execute(
                f"UPDATE reminders SET {clause} WHERE id = ?", [*params, reminder_id]
            )
            if affected == 0:
                return None
        return await self.get(reminder_id)

    async def transition(
        self,
        reminder_id: str,
        expected: Collection[ReminderStatus],
        changes: Dict,
    ) -> Optional[Reminder]:
        clause, params = self._assignments(changes)
        statuses = [status.value for status in expected]
        status_placeholders = ", ".join("?" for _ in statuses)
        affected = await self._execute(
            f"UPDATE reminders SET {clause} WHERE id = ? AND status IN ({status_placeholders})",
            [*params, reminder_id, *statuses],
        )
        if affected == 0:
            return None
        return await self.get(reminder_id)

    async def delete(self, reminder_id: str) -> bool:
        affected = await self._execute("DELETE FROM reminders WHERE id = ?", (reminder_id,))
        return affected > 0

    async def list(
        self,
        statuses: Optional[Collection[ReminderStatus]] = None,
        due_before: Optional[datetime] = None,
        due_from: Optional[datetime] = None,
    ) -> List[Reminder]:
        sql = "SELECT * FROM reminders"
        params: List[Any] = []
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            sql += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at"

        reminders = [_row_to_reminder(row) for row in await self._fetchall(sql, params)]

        # Due-window filtering happens on parsed datetimes so mixed offsets compare correctly
        if due_before is not None:
            reminders = [r for r in reminders if r.due_at <= due_before]
        if due_from is not None:
            reminders = [r for r in reminders if r.due_at >= due_from]
        return reminders

    # Push subscriptions

    async def upsert_subscription(self, subscription: PushSubscription) -> PushSubscription:
        await self._execute(
            """
            INSERT INTO push_subscriptions
                (endpoint, p256dh, auth, user_agent, created_at, last_used_at, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(endpoint) DO UPDATE SET
                p256dh = excluded.p256dh,
                auth = excluded.auth,
                user_agent = excluded.user_agent,
                last_used_at = excluded.last_used_at,
                is_active = excluded.is_active
            """,
            (
                subscription.endpoint,
                subscription.keys.p256dh,
                subscription.keys.auth,
                subscription.user_agent,
                _to_db(subscription.created_at),
                _to_db(subscription.last_used_at),
                _to_db(subscription.is_active),
            ),
        )
        return subscription

    async def get_subscription(self, endpoint: str) -> Optional[PushSubscription]:
        row = await self._fetchone("SELECT * FROM push_subscriptions WHERE endpoint = ?", (endpoint,))
        return _row_to_subscription(row) if row else None

    async def list_active_subscriptions(self) -> List[PushSubscription]:
        rows = await self._fetchall(
            "SELECT * FROM push_subscriptions WHERE is_active = 1 ORDER BY created_at"
        )
        return [_row_to_subscription(row) for row in rows]

    async def update_subscription(self, endpoint: str, changes: Dict) -> Optional[PushSubscription]:
        allowed = {"user_agent", "last_used_at", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {sorted(unknown)}")
        if changes:
            clause = ", ".join(f"{column} = ?" for column in changes)
            affected = await self._execute(
                f"UPDATE push_subscriptions SET {clause} WHERE endpoint = ?",
                [*(_to_db(value) for value in changes.values()), endpoint],
            )
            if affected == 0:
                return None
        return await self.get_subscription(endpoint)

    async def delete_subscription(self, endpoint: str) -> bool:
        affected = await self._execute("DELETE FROM push_subscriptions WHERE endpoint = ?", (endpoint,))
        return affected > 0
