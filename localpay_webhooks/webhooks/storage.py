"""Persistent storage for webhook registrations and delivery records.

The registry and recorder depend only on the ``WebhookStore`` interface.
Two implementations are provided: an in-memory store for tests and
embedded use, and an SQLite store backed by aiosqlite.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import aiosqlite
import structlog

from localpay_webhooks.config import settings
from localpay_webhooks.webhooks.events import WebhookEventType
from localpay_webhooks.webhooks.models import DeliveryAttempt, WebhookRegistration

logger = structlog.get_logger(__name__)


class TransientStoreError(Exception):
    """A write failed for a reason that may clear up on retry (locked/busy database)."""


class WebhookStore(ABC):
    """Record store for registrations and the append-only delivery history."""

    async def initialize(self) -> None:  # noqa: B027
        """Prepare the store for use."""

    async def close(self) -> None:  # noqa: B027
        """Release any held resources."""

    @abstractmethod
    async def save_registration(self, registration: WebhookRegistration) -> None:
        """Insert or replace a registration."""

    @abstractmethod
    async def get_registration(self, registration_id: str) -> WebhookRegistration | None:
        """Get a registration by ID."""

    @abstractmethod
    async def delete_registration(self, registration_id: str, owner_id: str) -> bool:
        """Delete a registration matching both ID and owner.

        Returns:
            True if a row was deleted.
        """

    @abstractmethod
    async def list_registrations(
        self,
        *,
        owner_id: str | None = None,
        enabled_only: bool = False,
    ) -> list[WebhookRegistration]:
        """List registrations, oldest first."""

    @abstractmethod
    async def append_delivery(self, attempt: DeliveryAttempt) -> None:
        """Append one delivery attempt. Existing rows are never modified."""

    @abstractmethod
    async def list_deliveries(
        self,
        registration_id: str,
        *,
        limit: int = 50,
    ) -> list[DeliveryAttempt]:
        """List delivery attempts for a registration, newest first."""


class InMemoryWebhookStore(WebhookStore):
    """Dictionary-backed store. Not persistent across processes."""

    def __init__(self) -> None:
        self._registrations: dict[str, WebhookRegistration] = {}
        self._deliveries: list[DeliveryAttempt] = []

    async def save_registration(self, registration: WebhookRegistration) -> None:
        self._registrations[registration.id] = registration.model_copy(deep=True)

    async def get_registration(self, registration_id: str) -> WebhookRegistration | None:
        registration = self._registrations.get(registration_id)
        return registration.model_copy(deep=True) if registration else None

    async def delete_registration(self, registration_id: str, owner_id: str) -> bool:
        registration = self._registrations.get(registration_id)
        if registration is None or registration.owner_id != owner_id:
            return False
        del self._registrations[registration_id]
        return True

    async def list_registrations(
        self,
        *,
        owner_id: str | None = None,
        enabled_only: bool = False,
    ) -> list[WebhookRegistration]:
        registrations = list(self._registrations.values())
        if owner_id is not None:
            registrations = [r for r in registrations if r.owner_id == owner_id]
        if enabled_only:
            registrations = [r for r in registrations if r.enabled]
        registrations.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in registrations]

    async def append_delivery(self, attempt: DeliveryAttempt) -> None:
        self._deliveries.append(attempt.model_copy())

    async def list_deliveries(
        self,
        registration_id: str,
        *,
        limit: int = 50,
    ) -> list[DeliveryAttempt]:
        # Insertion order is chronological
        deliveries = [
            d for d in reversed(self._deliveries)
            if d.registration_id == registration_id
        ]
        return deliveries[:limit]


class SQLiteWebhookStore(WebhookStore):
    """SQLite-based storage for registrations and delivery history.

    Example:
        store = SQLiteWebhookStore("./data/webhooks.db")
        await store.initialize()
        registry = WebhookRegistry(store)
    """

    def __init__(self, db_path: str | None = None) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
                    Defaults to settings.WEBHOOK_DB_PATH.
        """
        self._db_path = db_path or settings.WEBHOOK_DB_PATH
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._logger = logger.bind(component="webhook_store")

    async def initialize(self) -> None:
        """Open the database and create tables."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._create_tables()
        self._logger.info("webhook_store_initialized", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS webhooks (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                url TEXT NOT NULL,
                secret TEXT NOT NULL,
                events TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # No foreign key: history outlives the registration
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS webhook_deliveries (
                id TEXT PRIMARY KEY,
                registration_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                status_code INTEGER,
                success INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                attempt INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_webhooks_owner ON webhooks(owner_id)
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_registration
            ON webhook_deliveries(registration_id, created_at DESC)
        """)

        await self._connection.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def save_registration(self, registration: WebhookRegistration) -> None:
        assert self._connection is not None

        async with self._write_lock:
            await self._connection.execute(
                """
                INSERT OR REPLACE INTO webhooks
                (id, owner_id, url, secret, events, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    registration.id,
                    registration.owner_id,
                    str(registration.url),
                    registration.secret,
                    json.dumps(sorted(e.value for e in registration.events)),
                    1 if registration.enabled else 0,
                    registration.created_at.isoformat(),
                    registration.updated_at.isoformat(),
                ),
            )
            await self._connection.commit()

        self._logger.debug("registration_saved", registration_id=registration.id)

    async def get_registration(self, registration_id: str) -> WebhookRegistration | None:
        assert self._connection is not None

        cursor = await self._connection.execute(
            "SELECT * FROM webhooks WHERE id = ?",
            (registration_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        return self._row_to_registration(row)

    async def delete_registration(self, registration_id: str, owner_id: str) -> bool:
        assert self._connection is not None

        async with self._write_lock:
            cursor = await self._connection.execute(
                "DELETE FROM webhooks WHERE id = ? AND owner_id = ?",
                (registration_id, owner_id),
            )
            await self._connection.commit()

        return cursor.rowcount > 0

    async def list_registrations(
        self,
        *,
        owner_id: str | None = None,
        enabled_only: bool = False,
    ) -> list[WebhookRegistration]:
        assert self._connection is not None

        conditions: list[str] = []
        params: list[str] = []

        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if enabled_only:
            conditions.append("enabled = 1")

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        cursor = await self._connection.execute(
            f"SELECT * FROM webhooks WHERE {where_clause} ORDER BY created_at ASC",
            params,
        )
        rows = await cursor.fetchall()

        return [self._row_to_registration(row) for row in rows]

    async def append_delivery(self, attempt: DeliveryAttempt) -> None:
        assert self._connection is not None

        try:
            async with self._write_lock:
                await self._connection.execute(
                    """
                    INSERT INTO webhook_deliveries
                    (id, registration_id, event_id, event_type, payload, status_code,
                     success, error, duration_ms, attempt, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attempt.id,
                        attempt.registration_id,
                        attempt.event_id,
                        attempt.event_type.value,
                        attempt.payload,
                        attempt.status_code,
                        1 if attempt.success else 0,
                        attempt.error,
                        attempt.duration_ms,
                        attempt.attempt,
                        attempt.created_at.isoformat(),
                    ),
                )
                await self._connection.commit()
        except aiosqlite.OperationalError as e:
            raise TransientStoreError(str(e)) from e

    async def list_deliveries(
        self,
        registration_id: str,
        *,
        limit: int = 50,
    ) -> list[DeliveryAttempt]:
        assert self._connection is not None

        cursor = await self._connection.execute(
            """
            SELECT * FROM webhook_deliveries
            WHERE registration_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (registration_id, limit),
        )
        rows = await cursor.fetchall()

        return [self._row_to_delivery(row) for row in rows]

    def _row_to_registration(self, row: aiosqlite.Row) -> WebhookRegistration:
        return WebhookRegistration(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            secret=row["secret"],
            events={WebhookEventType(e) for e in json.loads(row["events"])},
            enabled=bool(row["enabled"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_delivery(self, row: aiosqlite.Row) -> DeliveryAttempt:
        return DeliveryAttempt(
            id=row["id"],
            registration_id=row["registration_id"],
            event_id=row["event_id"],
            event_type=WebhookEventType(row["event_type"]),
            payload=row["payload"],
            status_code=row["status_code"],
            success=bool(row["success"]),
            error=row["error"],
            duration_ms=row["duration_ms"],
            attempt=row["attempt"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
