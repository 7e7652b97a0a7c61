"""Tests for subscriber records and identity helpers."""

import pytest
from datetime import datetime, timedelta, timezone

from subgate.entitlements.models import (
    EntitlementRecord,
    SubscriptionStatus,
    is_direct_address,
    is_entitled,
    jid_for,
    normalize_identity,
    parse_timestamp,
)
from subgate.errors import ValidationError

NOW = datetime(2025, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


class TestNormalizeIdentity:

    @pytest.mark.parametrize("raw", [
        "201234567890",
        "+20 123-456-7890",
        "(20) 1234567890",
        "201234567890@s.whatsapp.net",
        "201234567890:12@s.whatsapp.net",
    ])
    def test_equivalent_forms(self, raw):
        assert normalize_identity(raw) == "201234567890"

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", "12345@g.us", "١٢٣٤٥"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            normalize_identity(raw)

    def test_too_long(self):
        with pytest.raises(ValidationError):
            normalize_identity("1" * 16)

    def test_jid_for(self):
        assert jid_for("+20 100") == "20100@s.whatsapp.net"


class TestIsDirectAddress:

    def test_user_jid(self):
        assert is_direct_address("201234567890@s.whatsapp.net")

    def test_bare_number(self):
        assert is_direct_address("201234567890")

    @pytest.mark.parametrize("address", [
        "120363000000000000@g.us",
        "status@broadcast",
        "120363000000000000@newsletter",
        "123@lid",
        "",
    ])
    def test_not_direct(self, address):
        assert not is_direct_address(address)


class TestIsEntitled:
    """Active status AND end date not yet passed."""

    def test_ends_exactly_now_is_entitled(self):
        record = EntitlementRecord("1", status=SubscriptionStatus.ACTIVE, ends_at=NOW)
        assert is_entitled(record, NOW)

    def test_ended_one_second_ago(self):
        record = EntitlementRecord("1", status=SubscriptionStatus.ACTIVE, ends_at=NOW - timedelta(seconds=1))
        assert not is_entitled(record, NOW)

    def test_no_end_date(self):
        record = EntitlementRecord("1", status=SubscriptionStatus.ACTIVE)
        assert is_entitled(record, NOW)

    @pytest.mark.parametrize("status", [
        SubscriptionStatus.INACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED,
    ])
    def test_non_active_status(self, status):
        record = EntitlementRecord("1", status=status, ends_at=NOW + timedelta(days=30))
        assert not is_entitled(record, NOW)

    def test_naive_end_date_treated_as_utc(self):
        record = EntitlementRecord("1", status=SubscriptionStatus.ACTIVE, ends_at=datetime(2025, 1, 10, 12, 0, 0))
        assert is_entitled(record, NOW)


class TestSubscriptionStatus:

    def test_parse_case_insensitive(self):
        assert SubscriptionStatus.parse(" Active ") == SubscriptionStatus.ACTIVE

    def test_parse_invalid(self):
        with pytest.raises(ValidationError, match="expected one of"):
            SubscriptionStatus.parse("paused")


class TestParseTimestamp:

    def test_zulu(self):
        ts = parse_timestamp("2025-01-10T00:00:00Z")
        assert ts == datetime(2025, 1, 10, tzinfo=timezone.utc)

    def test_date_only(self):
        assert parse_timestamp("2025-01-10").tzinfo is not None

    def test_empty(self):
        assert parse_timestamp("") is None

    def test_invalid(self):
        with pytest.raises(ValidationError):
            parse_timestamp("next tuesday")


def test_to_dict_hides_api_key():
    record = EntitlementRecord("201234567890", display_name="Sara", api_key="k-123")
    data = record.to_dict()
    assert data["hasApiKey"] is True
    assert "k-123" not in data.values()
    assert data["phone"] == "201234567890"
    assert data["status"] == "inactive"
