"""Entitlement store — subscriber records, gating rule, backends."""

from .models import (
    EntitlementRecord,
    SubscriptionStatus,
    is_direct_address,
    is_entitled,
    jid_for,
    normalize_identity,
    parse_timestamp,
)
from .store import EntitlementStore, MemoryEntitlementStore, call_with_retry

__all__ = [
    "EntitlementRecord",
    "SubscriptionStatus",
    "is_direct_address",
    "is_entitled",
    "jid_for",
    "normalize_identity",
    "parse_timestamp",
    "EntitlementStore",
    "MemoryEntitlementStore",
    "call_with_retry",
]
