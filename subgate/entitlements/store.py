"""Entitlement store interface, in-memory backend and retry helper."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import NotFoundError, StorageError, ValidationError
from .models import (
    EntitlementRecord,
    SubscriptionStatus,
    is_entitled,
    normalize_identity,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger("subgate.entitlements")

T = TypeVar("T")

# Fields the admin collaborator may set through upsert()
UPSERT_FIELDS = frozenset({
    "display_name",
    "status",
    "ends_at",
    "message_template",
    "api_key",
})


def validate_fields(fields: dict) -> dict:
    """Check and coerce upsert fields. Returns a new dict."""
    unknown = set(fields) - UPSERT_FIELDS
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

    clean = dict(fields)
    if "status" in clean:
        clean["status"] = SubscriptionStatus.parse(clean["status"])
    if "ends_at" in clean:
        clean["ends_at"] = parse_timestamp(clean["ends_at"])
    if "message_template" in clean:
        clean["message_template"] = str(clean["message_template"] or "")
    for key in ("display_name", "api_key"):
        if key in clean and clean[key] is not None:
            clean[key] = str(clean[key])
    return clean


async def call_with_retry(op: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
    """Run a store operation, retrying once on StorageError (no backoff)."""
    try:
        return await op(*args, **kwargs)
    except StorageError as e:
        logger.warning(f"Store operation {getattr(op, '__name__', op)} failed, retrying once: {e}")
        return await op(*args, **kwargs)


class EntitlementStore(ABC):
    """Durable CRUD over EntitlementRecord, keyed by normalized identity.

    Implementations must make increment_message_count() atomic at the
    storage layer — callers never read-modify-write a record.
    """

    @abstractmethod
    async def upsert(self, identity: str, **fields) -> EntitlementRecord:
        """Create (status=inactive, messages_sent=0) or merge given fields."""

    @abstractmethod
    async def get(self, identity: str) -> Optional[EntitlementRecord]:
        ...

    @abstractmethod
    async def list_all(self, limit: int = 100, offset: int = 0) -> list[EntitlementRecord]:
        """Records ordered by identity ascending."""

    @abstractmethod
    async def delete(self, identity: str) -> bool:
        ...

    @abstractmethod
    async def increment_message_count(self, identity: str, delta: int = 1) -> int:
        """Atomically add ``delta`` and stamp last_message_at. Returns new count."""

    @abstractmethod
    async def set_status(self, identity: str, status) -> Optional[EntitlementRecord]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def expire_lapsed(self) -> int:
        """Mark active records past ends_at as expired. Returns rows changed."""

    async def close(self):
        """Release backend resources (no-op by default)."""


class MemoryEntitlementStore(EntitlementStore):
    """Process-local store. Used when no database is configured, and in tests."""

    def __init__(self):
        self._records: dict[str, EntitlementRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, identity: str, **fields) -> EntitlementRecord:
        key = normalize_identity(identity)
        clean = validate_fields(fields)
        now = utcnow()
        async with self._lock:
            existing = self._records.get(key)
            if existing is None:
                record = EntitlementRecord(identity=key, created_at=now, updated_at=now, **clean)
            else:
                record = replace(existing, updated_at=now, **clean)
            self._records[key] = record
            return record

    async def get(self, identity: str) -> Optional[EntitlementRecord]:
        return self._records.get(normalize_identity(identity))

    async def list_all(self, limit: int = 100, offset: int = 0) -> list[EntitlementRecord]:
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative")
        keys = sorted(self._records)[offset:offset + limit]
        return [self._records[k] for k in keys]

    async def delete(self, identity: str) -> bool:
        key = normalize_identity(identity)
        async with self._lock:
            return self._records.pop(key, None) is not None

    async def increment_message_count(self, identity: str, delta: int = 1) -> int:
        if delta < 1:
            raise ValidationError("delta must be >= 1")
        key = normalize_identity(identity)
        async with self._lock:
            record = self._records.get(key)
            if record is None:
                raise NotFoundError(f"Subscriber {key} not found")
            now = utcnow()
            record = replace(
                record,
                messages_sent=record.messages_sent + delta,
                last_message_at=now,
                updated_at=now,
            )
            self._records[key] = record
            return record.messages_sent

    async def set_status(self, identity: str, status) -> Optional[EntitlementRecord]:
        key = normalize_identity(identity)
        status = SubscriptionStatus.parse(status)
        async with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            record = replace(record, status=status, updated_at=utcnow())
            self._records[key] = record
            return record

    async def count(self) -> int:
        return len(self._records)

    async def expire_lapsed(self) -> int:
        now = utcnow()
        changed = 0
        async with self._lock:
            for key, record in list(self._records.items()):
                if record.status == SubscriptionStatus.ACTIVE and not is_entitled(record, now):
                    self._records[key] = replace(record, status=SubscriptionStatus.EXPIRED, updated_at=now)
                    changed += 1
        return changed
