"""Messaging client interface — the session manager's only view of the network."""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional


class MessagingClient(ABC):
    """Transport to the messaging network.

    Implementations report everything that happens on the connection by
    putting ``SessionEvent`` objects on the queue passed to ``connect()``.
    They never track gating state or retry on their own; reconnect policy
    belongs to the session manager.
    """

    name: str = "client"

    @abstractmethod
    async def connect(self, credentials: Optional[str], events: asyncio.Queue) -> None:
        """Start connecting. Returns once the attempt is under way.

        Args:
            credentials: Previously persisted credential blob, or None to pair
            events: Queue for ConnectionChanged / CredentialsUpdated / MessageReceived

        Raises:
            Exception: if the attempt cannot even be started (treated as a
                failed connection and retried by the manager)
        """

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> Optional[str]:
        """Send a text message. Returns a message id when the network gives one."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection. Must not emit a close event."""
