"""PostgreSQL-backed entitlement store (asyncpg)."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

from ..db.connection import get_connection
from ..errors import NotFoundError, StorageError, ValidationError
from .models import EntitlementRecord, SubscriptionStatus, normalize_identity
from .store import EntitlementStore, validate_fields

logger = logging.getLogger("subgate.db.subscribers")

_COLUMNS = (
    "identity, display_name, status, ends_at, message_template, messages_sent, "
    "last_message_at, api_key, created_at, updated_at"
)

# Defaults for columns not supplied on first insert
_INSERT_DEFAULTS = {
    "display_name": None,
    "status": SubscriptionStatus.INACTIVE,
    "ends_at": None,
    "message_template": "",
    "api_key": None,
}


def _row_to_record(row) -> EntitlementRecord:
    return EntitlementRecord(
        identity=row["identity"],
        display_name=row["display_name"],
        status=SubscriptionStatus(row["status"]),
        ends_at=row["ends_at"],
        message_template=row["message_template"] or "",
        messages_sent=row["messages_sent"],
        last_message_at=row["last_message_at"],
        api_key=row["api_key"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@asynccontextmanager
async def _storage_errors(op: str):
    """Surface driver / network failures as StorageError."""
    try:
        yield
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error(f"subscribers.{op} failed: {type(e).__name__}: {e}")
        raise StorageError(f"{op} failed: {e}") from e


class PostgresEntitlementStore(EntitlementStore):
    """Subscribers table. Requires init_db() to have been called."""

    async def upsert(self, identity: str, **fields) -> EntitlementRecord:
        key = normalize_identity(identity)
        clean = validate_fields(fields)

        values = {**_INSERT_DEFAULTS, **clean}
        if isinstance(values["status"], SubscriptionStatus):
            values["status"] = values["status"].value
        columns = list(_INSERT_DEFAULTS)
        params = [key] + [values[c] for c in columns]

        # Only merge what the caller provided
        updates = [f"{c} = EXCLUDED.{c}" for c in columns if c in clean]
        updates.append("updated_at = NOW()")

        query = f"""
            INSERT INTO subscribers (identity, {', '.join(columns)})
            VALUES ($1, {', '.join(f'${i}' for i in range(2, len(columns) + 2))})
            ON CONFLICT (identity) DO UPDATE SET {', '.join(updates)}
            RETURNING {_COLUMNS}
        """
        async with _storage_errors("upsert"):
            async with get_connection() as conn:
                row = await conn.fetchrow(query, *params)
        return _row_to_record(row)

    async def get(self, identity: str) -> Optional[EntitlementRecord]:
        key = normalize_identity(identity)
        async with _storage_errors("get"):
            async with get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM subscribers WHERE identity = $1", key,
                )
        return _row_to_record(row) if row else None

    async def list_all(self, limit: int = 100, offset: int = 0) -> list[EntitlementRecord]:
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative")
        async with _storage_errors("list_all"):
            async with get_connection() as conn:
                rows = await conn.fetch(
                    f"SELECT {_COLUMNS} FROM subscribers ORDER BY identity ASC LIMIT $1 OFFSET $2",
                    limit, offset,
                )
        return [_row_to_record(r) for r in rows]

    async def delete(self, identity: str) -> bool:
        key = normalize_identity(identity)
        async with _storage_errors("delete"):
            async with get_connection() as conn:
                result = await conn.execute("DELETE FROM subscribers WHERE identity = $1", key)
        return "DELETE 1" in str(result)

    async def increment_message_count(self, identity: str, delta: int = 1) -> int:
        if delta < 1:
            raise ValidationError("delta must be >= 1")
        key = normalize_identity(identity)
        async with _storage_errors("increment_message_count"):
            async with get_connection() as conn:
                new_count = await conn.fetchval("""
                    UPDATE subscribers
                    SET messages_sent = messages_sent + $2,
                        last_message_at = NOW(),
                        updated_at = NOW()
                    WHERE identity = $1
                    RETURNING messages_sent
                """, key, delta)
        if new_count is None:
            raise NotFoundError(f"Subscriber {key} not found")
        return new_count

    async def set_status(self, identity: str, status) -> Optional[EntitlementRecord]:
        key = normalize_identity(identity)
        status = SubscriptionStatus.parse(status)
        async with _storage_errors("set_status"):
            async with get_connection() as conn:
                row = await conn.fetchrow(f"""
                    UPDATE subscribers SET status = $2, updated_at = NOW()
                    WHERE identity = $1
                    RETURNING {_COLUMNS}
                """, key, status.value)
        return _row_to_record(row) if row else None

    async def count(self) -> int:
        async with _storage_errors("count"):
            async with get_connection() as conn:
                return await conn.fetchval("SELECT COUNT(*) FROM subscribers")

    async def expire_lapsed(self) -> int:
        """Admin sweep: active subscriptions past their end date → expired."""
        async with _storage_errors("expire_lapsed"):
            async with get_connection() as conn:
                result = await conn.execute("""
                    UPDATE subscribers SET status = 'expired', updated_at = NOW()
                    WHERE status = 'active' AND ends_at IS NOT NULL AND ends_at < NOW()
                """)
        # "UPDATE <n>"
        return int(str(result).split()[-1])
