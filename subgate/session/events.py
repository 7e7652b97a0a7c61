"""Events emitted by a messaging client.

A client puts these onto the queue it was given in ``connect()``; the
session manager consumes them in one task and dispatches on type.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from ..entitlements.models import utcnow


class DisconnectCause(str, Enum):
    LOGGED_OUT = "logged_out"          # terminal, credentials revoked
    CONNECTION_LOST = "connection_lost"
    CONNECTION_FAILED = "connection_failed"
    PAIRING_FAILED = "pairing_failed"
    CLOSED = "closed"


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


@dataclass(frozen=True)
class ConnectionChanged:
    status: ConnectionStatus
    pairing_challenge: Optional[str] = None
    cause: Optional[DisconnectCause] = None
    credentials: Optional[str] = None
    detail: str = ""


@dataclass(frozen=True)
class CredentialsUpdated:
    credentials: str


@dataclass(frozen=True)
class MessageReceived:
    sender: str                       # chat JID the message came from
    text: str = ""
    from_me: bool = False
    message_id: Optional[str] = None
    push_name: str = ""
    received_at: datetime = field(default_factory=utcnow)


SessionEvent = Union[ConnectionChanged, CredentialsUpdated, MessageReceived]
