"""Subscriber entitlement records and identity helpers."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..errors import ValidationError

JID_SUFFIX = "@s.whatsapp.net"

# Non-direct chats: groups, status broadcasts, channels
_NON_DIRECT_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")

_STRIP_CHARS_RE = re.compile(r"[\s+\-()]")
_MAX_DIGITS = 15  # E.164


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TRIAL = "trial"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value) -> "SubscriptionStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Invalid subscription status '{value}' (expected one of: {allowed})")


@dataclass(frozen=True)
class EntitlementRecord:
    identity: str
    display_name: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    ends_at: Optional[datetime] = None
    message_template: str = ""
    messages_sent: int = 0
    last_message_at: Optional[datetime] = None
    api_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """JSON-friendly view (api_key is never included)."""
        return {
            "phone": self.identity,
            "name": self.display_name or "",
            "status": self.status.value,
            "endDate": self.ends_at.isoformat() if self.ends_at else None,
            "messageTemplate": self.message_template or "",
            "messagesSent": self.messages_sent,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "hasApiKey": bool(self.api_key),
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Accept datetime, ISO-8601 string (``Z`` allowed) or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            raise ValidationError(f"Invalid timestamp '{value}'")
    raise ValidationError(f"Invalid timestamp type: {type(value).__name__}")


def is_entitled(record: EntitlementRecord, now: Optional[datetime] = None) -> bool:
    """Active status AND (no end date OR end date not yet passed)."""
    if record.status != SubscriptionStatus.ACTIVE:
        return False
    if record.ends_at is None:
        return True
    now = ensure_utc(now) if now else utcnow()
    return ensure_utc(record.ends_at) >= now


def normalize_identity(raw) -> str:
    """Normalize a phone number or WhatsApp JID to bare digits.

    ``+20 123-456-7890``, ``201234567890@s.whatsapp.net`` and
    ``201234567890:12@s.whatsapp.net`` all become ``201234567890``.
    """
    if raw is None:
        raise ValidationError("Phone number is required")
    value = str(raw).strip()
    if value.endswith(JID_SUFFIX):
        value = value[: -len(JID_SUFFIX)]
    # Device JID (e.g. 2012...:51@s.whatsapp.net)
    value = value.split(":", 1)[0]
    value = _STRIP_CHARS_RE.sub("", value)
    if not value:
        raise ValidationError("Phone number is required")
    if not (value.isascii() and value.isdigit()):
        raise ValidationError(f"Invalid phone number '{raw}'")
    if len(value) > _MAX_DIGITS:
        raise ValidationError(f"Phone number too long: '{raw}'")
    return value


def jid_for(identity: str) -> str:
    """Identity → WhatsApp user JID."""
    return f"{normalize_identity(identity)}{JID_SUFFIX}"


def is_direct_address(address: str) -> bool:
    """True for a single-subscriber address (user JID or bare number)."""
    if not address:
        return False
    if address.endswith(_NON_DIRECT_SUFFIXES):
        return False
    if "@" in address:
        return address.endswith(JID_SUFFIX)
    return True
