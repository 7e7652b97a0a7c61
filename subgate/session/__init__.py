"""WhatsApp session — connection state machine and clients."""

from .client import MessagingClient
from .credentials import (
    CredentialStore,
    DatabaseCredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
)
from .events import (
    ConnectionChanged,
    ConnectionStatus,
    CredentialsUpdated,
    DisconnectCause,
    MessageReceived,
    SessionEvent,
)
from .manager import Connectivity, SessionManager, SessionSnapshot

__all__ = [
    "MessagingClient",
    "CredentialStore",
    "DatabaseCredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "ConnectionChanged",
    "ConnectionStatus",
    "CredentialsUpdated",
    "DisconnectCause",
    "MessageReceived",
    "SessionEvent",
    "Connectivity",
    "SessionManager",
    "SessionSnapshot",
]
