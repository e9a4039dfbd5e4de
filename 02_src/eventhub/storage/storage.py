"""SQLite storage for webhook subscriptions and the delivery ledger."""

import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from ..config import resolve_db_path
from ..models import (
    DeliveryRecord,
    DeliveryResponse,
    DeliveryStatus,
    EventEnvelope,
    RetryPolicy,
    SubscriptionFilter,
    WebhookSubscription,
    utcnow,
)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


_SUBSCRIPTION_COLUMNS = """
    id, tenant_id, name, description, url, secret, events, is_active,
    headers, filters, max_retries, initial_delay, backoff_multiplier,
    success_count, failure_count, last_triggered_at, created_by,
    created_at, updated_at
"""

_DELIVERY_COLUMNS = """
    id, subscription_id, tenant_id, event, status, attempts,
    last_attempt_at, next_retry_at, response_status, response_body,
    last_error, duration_ms, created_at, updated_at
"""


def _row_to_subscription(row: Any) -> WebhookSubscription:
    return WebhookSubscription(
        id=row[0],
        tenant_id=row[1],
        name=row[2],
        description=row[3],
        url=row[4],
        secret=row[5],
        events=json.loads(row[6]),
        is_active=bool(row[7]),
        headers=json.loads(row[8]),
        filters=[SubscriptionFilter(**f) for f in json.loads(row[9])],
        retry_policy=RetryPolicy(
            max_retries=row[10],
            initial_delay=row[11],
            backoff_multiplier=row[12],
        ),
        success_count=row[13],
        failure_count=row[14],
        last_triggered_at=_dt(row[15]),
        created_by=row[16],
        created_at=_dt(row[17]),
        updated_at=_dt(row[18]),
    )


def _row_to_delivery(row: Any) -> DeliveryRecord:
    return DeliveryRecord(
        id=row[0],
        subscription_id=row[1],
        tenant_id=row[2],
        event=EventEnvelope.from_json(row[3]),
        status=DeliveryStatus(row[4]),
        attempts=row[5],
        last_attempt_at=_dt(row[6]),
        next_retry_at=_dt(row[7]),
        last_response=(
            DeliveryResponse(status_code=row[8], body=row[9] or "")
            if row[8] is not None
            else None
        ),
        last_error=row[10],
        duration_ms=row[11],
        created_at=_dt(row[12]),
        updated_at=_dt(row[13]),
    )


class IStorage(Protocol):
    """Persistent store for subscriptions and delivery records (SQLite)."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Subscriptions
    async def save_subscription(self, subscription: WebhookSubscription) -> None:
        """Insert a subscription or update its editable fields (counters are kept)."""
        ...

    async def get_subscription(
        self, subscription_id: str, tenant_id: str | None = None
    ) -> WebhookSubscription | None:
        """Get a subscription, optionally scoped to a tenant."""
        ...

    async def list_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        """All subscriptions of a tenant, oldest first."""
        ...

    async def get_active_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        """Active subscriptions of a tenant."""
        ...

    async def delete_subscription(self, tenant_id: str, subscription_id: str) -> bool:
        """Delete a subscription and its deliveries. Returns False if missing."""
        ...

    async def record_delivery_result(
        self, subscription_id: str, success: bool, at: datetime
    ) -> None:
        """Bump the success or failure counter of a subscription."""
        ...

    # Delivery ledger
    async def create_delivery(self, record: DeliveryRecord) -> tuple[DeliveryRecord, bool]:
        """Insert unless (subscription_id, event_id) exists. Returns (stored, created)."""
        ...

    async def claim_delivery(
        self,
        record: DeliveryRecord,
        token: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """Take the right to attempt a record, if its status and attempts are unchanged."""
        ...

    async def save_delivery(
        self, record: DeliveryRecord, claim_token: str | None = None
    ) -> bool:
        """Persist the mutable fields of a delivery record and release its claim."""
        ...

    async def get_delivery(
        self, delivery_id: str, tenant_id: str | None = None
    ) -> DeliveryRecord | None:
        """Get a delivery record by id."""
        ...

    async def list_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        """Delivery history of a subscription, newest first."""
        ...

    async def count_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
    ) -> int:
        """Number of deliveries matching the list filters."""
        ...

    async def get_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryRecord]:
        """Retrying deliveries of active subscriptions whose time has come."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute("PRAGMA foreign_keys = ON")

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    # Subscriptions
    async def save_subscription(self, subscription: WebhookSubscription) -> None:
        """Insert a subscription or update its editable fields (counters are kept)."""
        conn = self._require_conn()

        now = utcnow()
        if subscription.created_at is None:
            subscription.created_at = now
        subscription.updated_at = now

        await conn.execute(
            f"""
            INSERT INTO webhook_subscriptions ({_SUBSCRIPTION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                url = excluded.url,
                secret = excluded.secret,
                events = excluded.events,
                is_active = excluded.is_active,
                headers = excluded.headers,
                filters = excluded.filters,
                max_retries = excluded.max_retries,
                initial_delay = excluded.initial_delay,
                backoff_multiplier = excluded.backoff_multiplier,
                updated_at = excluded.updated_at
            """,
            (
                subscription.id,
                subscription.tenant_id,
                subscription.name,
                subscription.description,
                subscription.url,
                subscription.secret,
                json.dumps(list(subscription.events)),
                int(subscription.is_active),
                json.dumps(subscription.headers),
                json.dumps([asdict(f) for f in subscription.filters]),
                subscription.retry_policy.max_retries,
                subscription.retry_policy.initial_delay,
                subscription.retry_policy.backoff_multiplier,
                subscription.success_count,
                subscription.failure_count,
                _iso(subscription.last_triggered_at),
                subscription.created_by,
                _iso(subscription.created_at),
                _iso(subscription.updated_at),
            ),
        )
        await conn.commit()

    async def get_subscription(
        self, subscription_id: str, tenant_id: str | None = None
    ) -> WebhookSubscription | None:
        """Get a subscription, optionally scoped to a tenant."""
        conn = self._require_conn()

        query = f"SELECT {_SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions WHERE id = ?"
        params: list[Any] = [subscription_id]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)

        cursor = await conn.execute(query, params)
        row = await cursor.fetchone()
        return _row_to_subscription(row) if row else None

    async def list_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        """All subscriptions of a tenant, oldest first."""
        conn = self._require_conn()

        cursor = await conn.execute(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM webhook_subscriptions
            WHERE tenant_id = ?
            ORDER BY created_at ASC
            """,
            (tenant_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def get_active_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        """Active subscriptions of a tenant."""
        conn = self._require_conn()

        cursor = await conn.execute(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM webhook_subscriptions
            WHERE tenant_id = ? AND is_active = 1
            ORDER BY created_at ASC
            """,
            (tenant_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def delete_subscription(self, tenant_id: str, subscription_id: str) -> bool:
        """Delete a subscription and its deliveries. Returns False if missing."""
        conn = self._require_conn()

        cursor = await conn.execute(
            "DELETE FROM webhook_subscriptions WHERE id = ? AND tenant_id = ?",
            (subscription_id, tenant_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def record_delivery_result(
        self, subscription_id: str, success: bool, at: datetime
    ) -> None:
        """Bump the success or failure counter of a subscription."""
        conn = self._require_conn()

        if success:
            await conn.execute(
                """
                UPDATE webhook_subscriptions
                SET success_count = success_count + 1, last_triggered_at = ?
                WHERE id = ?
                """,
                (_iso(at), subscription_id),
            )
        else:
            await conn.execute(
                """
                UPDATE webhook_subscriptions
                SET failure_count = failure_count + 1
                WHERE id = ?
                """,
                (subscription_id,),
            )
        await conn.commit()

    # Delivery ledger
    async def create_delivery(self, record: DeliveryRecord) -> tuple[DeliveryRecord, bool]:
        """Insert unless (subscription_id, event_id) exists. Returns (stored, created)."""
        conn = self._require_conn()

        now = utcnow()
        cursor = await conn.execute(
            """
            INSERT OR IGNORE INTO webhook_deliveries
            (id, subscription_id, tenant_id, event_id, event_type, event,
             status, attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.subscription_id,
                record.tenant_id,
                record.event.event_id,
                record.event.event_type,
                record.event.to_json(),
                record.status.value,
                record.attempts,
                _iso(now),
                _iso(now),
            ),
        )
        created = cursor.rowcount > 0
        await conn.commit()

        cursor = await conn.execute(
            f"""
            SELECT {_DELIVERY_COLUMNS}
            FROM webhook_deliveries
            WHERE subscription_id = ? AND event_id = ?
            """,
            (record.subscription_id, record.event.event_id),
        )
        row = await cursor.fetchone()
        return _row_to_delivery(row), created

    async def claim_delivery(
        self,
        record: DeliveryRecord,
        token: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """Take the right to attempt a record, if its status and attempts are unchanged.

        Fails when another attempt holds an unexpired lease or when the
        stored row has moved on from the caller's snapshot.
        """
        conn = self._require_conn()

        cursor = await conn.execute(
            """
            UPDATE webhook_deliveries
            SET claim_token = ?, claimed_until = ?
            WHERE id = ? AND status = ? AND attempts = ?
              AND (claimed_until IS NULL OR claimed_until <= ?)
            """,
            (
                token,
                _iso(lease_until),
                record.id,
                record.status.value,
                record.attempts,
                _iso(now),
            ),
        )
        claimed = cursor.rowcount == 1
        await conn.commit()
        return claimed

    async def save_delivery(
        self, record: DeliveryRecord, claim_token: str | None = None
    ) -> bool:
        """Persist the mutable fields of a delivery record and release its claim.

        With ``claim_token`` the write only lands while that claim is still
        held. Returns False when nothing was written.
        """
        conn = self._require_conn()

        record.updated_at = utcnow()
        response = record.last_response
        query = """
            UPDATE webhook_deliveries
            SET status = ?, attempts = ?, last_attempt_at = ?, next_retry_at = ?,
                response_status = ?, response_body = ?, last_error = ?,
                duration_ms = ?, updated_at = ?,
                claim_token = NULL, claimed_until = NULL
            WHERE id = ?
        """
        params: list[Any] = [
            record.status.value,
            record.attempts,
            _iso(record.last_attempt_at),
            _iso(record.next_retry_at),
            response.status_code if response else None,
            response.body if response else None,
            record.last_error,
            record.duration_ms,
            _iso(record.updated_at),
            record.id,
        ]
        if claim_token is not None:
            query += " AND claim_token = ?"
            params.append(claim_token)

        cursor = await conn.execute(query, params)
        saved = cursor.rowcount == 1
        await conn.commit()
        return saved

    async def get_delivery(
        self, delivery_id: str, tenant_id: str | None = None
    ) -> DeliveryRecord | None:
        """Get a delivery record by id."""
        conn = self._require_conn()

        query = f"SELECT {_DELIVERY_COLUMNS} FROM webhook_deliveries WHERE id = ?"
        params: list[Any] = [delivery_id]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)

        cursor = await conn.execute(query, params)
        row = await cursor.fetchone()
        return _row_to_delivery(row) if row else None

    def _delivery_filters(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None,
    ) -> tuple[str, list[Any]]:
        conditions = ["tenant_id = ?", "subscription_id = ?"]
        params: list[Any] = [tenant_id, subscription_id]
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        return " AND ".join(conditions), params

    async def list_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        """Delivery history of a subscription, newest first."""
        conn = self._require_conn()

        where_clause, params = self._delivery_filters(tenant_id, subscription_id, status)
        cursor = await conn.execute(
            f"""
            SELECT {_DELIVERY_COLUMNS}
            FROM webhook_deliveries
            WHERE {where_clause}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            [*params, limit, offset],
        )
        rows = await cursor.fetchall()
        return [_row_to_delivery(row) for row in rows]

    async def count_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
    ) -> int:
        """Number of deliveries matching the list filters."""
        conn = self._require_conn()

        where_clause, params = self._delivery_filters(tenant_id, subscription_id, status)
        cursor = await conn.execute(
            f"SELECT COUNT(*) FROM webhook_deliveries WHERE {where_clause}",
            params,
        )
        row = await cursor.fetchone()
        return row[0]

    async def get_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryRecord]:
        """Retrying deliveries of active subscriptions whose time has come."""
        conn = self._require_conn()

        columns = ", ".join(f"d.{c.strip()}" for c in _DELIVERY_COLUMNS.split(","))
        cursor = await conn.execute(
            f"""
            SELECT {columns}
            FROM webhook_deliveries d
            JOIN webhook_subscriptions s ON s.id = d.subscription_id
            WHERE d.status = ? AND d.next_retry_at <= ? AND s.is_active = 1
              AND (d.claimed_until IS NULL OR d.claimed_until <= ?)
            ORDER BY d.next_retry_at ASC
            LIMIT ?
            """,
            (DeliveryStatus.RETRYING.value, _iso(now), _iso(now), limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_delivery(row) for row in rows]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._require_conn()

        for table in ["webhook_deliveries", "webhook_subscriptions"]:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
