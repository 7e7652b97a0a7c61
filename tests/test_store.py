"""Tests for the in-memory entitlement store and retry helper."""

import asyncio
from datetime import timedelta

import pytest

from subgate.entitlements import MemoryEntitlementStore, SubscriptionStatus, call_with_retry
from subgate.entitlements.models import utcnow
from subgate.errors import NotFoundError, StorageError, ValidationError


@pytest.fixture
def mem():
    return MemoryEntitlementStore()


class TestUpsert:

    async def test_create_defaults(self, mem):
        record = await mem.upsert("+20 100 200")
        assert record.identity == "20100200"
        assert record.status == SubscriptionStatus.INACTIVE
        assert record.messages_sent == 0
        assert record.created_at is not None

    async def test_merge_keeps_untouched_fields(self, mem):
        await mem.upsert("20100", display_name="Sara", message_template="Hi {name}")
        record = await mem.upsert("20100@s.whatsapp.net", status="active")
        assert record.display_name == "Sara"
        assert record.message_template == "Hi {name}"
        assert record.status == SubscriptionStatus.ACTIVE

    async def test_end_date_string(self, mem):
        record = await mem.upsert("20100", ends_at="2025-01-10T00:00:00Z")
        assert record.ends_at.year == 2025

    async def test_unknown_field(self, mem):
        with pytest.raises(ValidationError, match="Unknown field"):
            await mem.upsert("20100", messages_sent=99)

    async def test_invalid_status(self, mem):
        with pytest.raises(ValidationError):
            await mem.upsert("20100", status="paused")

    async def test_invalid_identity(self, mem):
        with pytest.raises(ValidationError):
            await mem.upsert("not-a-phone")


class TestReadDelete:

    async def test_get_missing(self, mem):
        assert await mem.get("20100") is None

    async def test_list_ordered_and_paged(self, mem):
        for phone in ("300", "100", "200"):
            await mem.upsert(phone)
        assert [r.identity for r in await mem.list_all()] == ["100", "200", "300"]
        assert [r.identity for r in await mem.list_all(limit=1, offset=1)] == ["200"]

    async def test_list_rejects_negative(self, mem):
        with pytest.raises(ValidationError):
            await mem.list_all(limit=-1)

    async def test_delete(self, mem):
        await mem.upsert("20100")
        assert await mem.delete("20100") is True
        assert await mem.delete("20100") is False
        assert await mem.count() == 0


class TestCounters:

    async def test_concurrent_increments_add_exactly_n(self, mem):
        await mem.upsert("20100")
        await asyncio.gather(*(mem.increment_message_count("20100") for _ in range(50)))
        record = await mem.get("20100")
        assert record.messages_sent == 50
        assert record.last_message_at is not None

    async def test_increment_returns_new_count(self, mem):
        await mem.upsert("20100")
        assert await mem.increment_message_count("20100", delta=3) == 3

    async def test_increment_unknown(self, mem):
        with pytest.raises(NotFoundError):
            await mem.increment_message_count("20100")

    async def test_increment_rejects_zero(self, mem):
        await mem.upsert("20100")
        with pytest.raises(ValidationError):
            await mem.increment_message_count("20100", delta=0)


class TestStatus:

    async def test_set_status(self, mem):
        await mem.upsert("20100", status="active")
        record = await mem.set_status("20100", SubscriptionStatus.EXPIRED)
        assert record.status == SubscriptionStatus.EXPIRED

    async def test_set_status_unknown(self, mem):
        assert await mem.set_status("20100", "active") is None

    async def test_expire_lapsed(self, mem):
        now = utcnow()
        await mem.upsert("100", status="active", ends_at=now - timedelta(days=1))
        await mem.upsert("200", status="active", ends_at=now + timedelta(days=1))
        await mem.upsert("300", status="trial", ends_at=now - timedelta(days=1))
        await mem.upsert("400", status="active")

        assert await mem.expire_lapsed() == 1
        assert (await mem.get("100")).status == SubscriptionStatus.EXPIRED
        assert (await mem.get("200")).status == SubscriptionStatus.ACTIVE
        assert (await mem.get("300")).status == SubscriptionStatus.TRIAL
        assert (await mem.get("400")).status == SubscriptionStatus.ACTIVE


class TestCallWithRetry:

    async def test_retries_once_on_storage_error(self):
        calls = []

        async def flaky(x):
            calls.append(x)
            if len(calls) == 1:
                raise StorageError("connection reset")
            return x * 2

        assert await call_with_retry(flaky, 21) == 42
        assert len(calls) == 2

    async def test_second_failure_surfaces(self):
        async def broken():
            raise StorageError("down")

        with pytest.raises(StorageError):
            await call_with_retry(broken)

    async def test_other_errors_not_retried(self):
        calls = []

        async def invalid():
            calls.append(1)
            raise ValidationError("bad")

        with pytest.raises(ValidationError):
            await call_with_retry(invalid)
        assert len(calls) == 1
