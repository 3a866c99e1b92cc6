"""
Async Postgres: orders (current status + version per order), order_status_history (audit trail)
and customer_notifications (delivered notifications, idempotent on notification_id).
Status writes are compare-and-swap on orders.version; the history row is written in the same transaction.
"""
import json
import uuid

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from reconciler.config import settings
from reconciler.order_state import OrderStatus
from reconciler.reconcile import OrderSnapshot, StatusChange

_pool: asyncpg.Pool | None = None


class DuplicateOrderError(Exception):
    """Raised when creating an order whose order_id already exists."""


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(255) PRIMARY KEY,
                vendor_id VARCHAR(255) NOT NULL,
                current_status VARCHAR(50) NOT NULL,
                version INT NOT NULL DEFAULT 0,
                tracking_number VARCHAR(255),
                hold_reason TEXT,
                estimated_delivery DATE,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                id UUID PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id),
                from_status VARCHAR(50),
                to_status VARCHAR(50) NOT NULL,
                event VARCHAR(50),
                source VARCHAR(255) NOT NULL,
                notes TEXT,
                created_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id
            ON order_status_history(order_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS customer_notifications (
                id UUID PRIMARY KEY,
                notification_id VARCHAR(255) NOT NULL,
                order_id VARCHAR(255) NOT NULL,
                status VARCHAR(50) NOT NULL,
                payload JSONB,
                attempts INT DEFAULT 0,
                created_at TIMESTAMP DEFAULT NOW(),
                UNIQUE(notification_id)
            );
        """)


class PostgresOrderRepository:
    """OrderRepository over the orders table with optimistic concurrency on version."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create_order(self, order_id: str, vendor_id: str) -> OrderSnapshot:
        """Register an order the vendor has taken on. Starts at Pending, version 0."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                try:
                    await conn.execute(
                        """
                        INSERT INTO orders (order_id, vendor_id, current_status, version, updated_at)
                        VALUES ($1, $2, $3, 0, NOW());
                        """,
                        order_id,
                        vendor_id,
                        OrderStatus.PENDING.value,
                    )
                except UniqueViolationError:
                    raise DuplicateOrderError(order_id)
                await conn.execute(
                    """
                    INSERT INTO order_status_history (id, order_id, from_status, to_status, event, source)
                    VALUES ($1, $2, NULL, $3, NULL, $4);
                    """,
                    uuid.uuid4(),
                    order_id,
                    OrderStatus.PENDING.value,
                    f"vendor:{vendor_id}",
                )
        return OrderSnapshot(OrderStatus.PENDING, 0)

    async def load(self, order_id: str) -> OrderSnapshot | None:
        row = await self.pool.fetchrow(
            "SELECT current_status, version FROM orders WHERE order_id = $1;",
            order_id,
        )
        if row is None:
            return None
        return OrderSnapshot(OrderStatus(row["current_status"]), row["version"])

    async def compare_and_swap(
        self,
        order_id: str,
        expected_version: int,
        new_status: OrderStatus,
        change: StatusChange,
    ) -> bool:
        """
        Write new_status only if the row is still at expected_version.
        Returns False on a concurrent update (nothing written).
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    UPDATE orders
                    SET current_status = $1,
                        version = version + 1,
                        hold_reason = $2,
                        tracking_number = COALESCE($3, tracking_number),
                        estimated_delivery = COALESCE($4, estimated_delivery),
                        updated_at = NOW()
                    WHERE order_id = $5 AND version = $6
                    RETURNING version;
                    """,
                    new_status.value,
                    change.hold_reason,
                    change.tracking_number,
                    change.estimated_delivery,
                    order_id,
                    expected_version,
                )
                if updated is None:
                    return False
                await conn.execute(
                    """
                    INSERT INTO order_status_history (id, order_id, from_status, to_status, event, source, notes)
                    VALUES ($1, $2, $3, $4, $5, $6, $7);
                    """,
                    uuid.uuid4(),
                    order_id,
                    change.from_status.value,
                    new_status.value,
                    change.event,
                    change.source,
                    change.notes or change.hold_reason,
                )
        return True

    async def get_order(self, order_id: str) -> dict | None:
        row = await self.pool.fetchrow(
            """
            SELECT order_id, vendor_id, current_status, version, tracking_number, hold_reason,
                   estimated_delivery, created_at, updated_at
            FROM orders WHERE order_id = $1;
            """,
            order_id,
        )
        return dict(row) if row is not None else None

    async def get_history(self, order_id: str) -> list[dict]:
        """Status history for order_id, oldest first."""
        rows = await self.pool.fetch(
            """
            SELECT from_status, to_status, event, source, notes, created_at
            FROM order_status_history
            WHERE order_id = $1
            ORDER BY created_at ASC;
            """,
            order_id,
        )
        return [dict(r) for r in rows]


async def insert_notification(pool: asyncpg.Pool, notification_id: str, order_id: str, status: str, payload: dict, attempts: int = 0) -> bool:
    """Record a delivered notification. Returns False if notification_id was already recorded."""
    async with pool.acquire() as conn:
        try:
            await conn.execute(
                """
                INSERT INTO customer_notifications (id, notification_id, order_id, status, payload, attempts)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6);
                """,
                uuid.uuid4(),
                notification_id,
                order_id,
                status,
                json.dumps(payload) if payload else "{}",
                attempts,
            )
        except UniqueViolationError:
            return False
    return True


async def notification_recorded(pool: asyncpg.Pool, notification_id: str) -> bool:
    row = await pool.fetchval(
        "SELECT 1 FROM customer_notifications WHERE notification_id = $1;",
        notification_id,
    )
    return row is not None
