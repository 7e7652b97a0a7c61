"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Optional

import pytest

from subgate.entitlements import MemoryEntitlementStore
from subgate.session import (
    ConnectionChanged,
    ConnectionStatus,
    Connectivity,
    CredentialsUpdated,
    MemoryCredentialStore,
    MessagingClient,
    SessionManager,
)


class FakeMessagingClient(MessagingClient):
    """Scripted client: records calls, emits events on demand.

    With a stored credential the connection opens immediately (silent
    resume). Without one it emits ``pairing_challenge`` if set.
    """

    name = "fake"

    def __init__(self, pairing_challenge: Optional[str] = None, fail_connect: int = 0):
        self.pairing_challenge = pairing_challenge
        self.fail_connect = fail_connect
        self.events: Optional[asyncio.Queue] = None
        self.connect_calls: list[Optional[str]] = []
        self.sent: list[tuple[str, str]] = []
        self.close_calls = 0
        self.send_delay = 0.0
        self.send_error: Optional[Exception] = None
        self.credentials_on_close: Optional[str] = None

    async def connect(self, credentials, events):
        self.events = events
        self.connect_calls.append(credentials)
        if self.fail_connect > 0:
            self.fail_connect -= 1
            raise ConnectionError("network unreachable")
        if credentials:
            events.put_nowait(ConnectionChanged(status=ConnectionStatus.OPEN, credentials=credentials))
        elif self.pairing_challenge:
            events.put_nowait(ConnectionChanged(
                status=ConnectionStatus.CONNECTING, pairing_challenge=self.pairing_challenge,
            ))

    async def send_text(self, jid, text):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        self.sent.append((jid, text))
        return f"msg-{len(self.sent)}"

    async def close(self):
        self.close_calls += 1
        if self.credentials_on_close and self.events is not None:
            self.events.put_nowait(CredentialsUpdated(credentials=self.credentials_on_close))

    def emit(self, event):
        self.events.put_nowait(event)


class RecordingStore(MemoryEntitlementStore):
    """Memory store that logs every write (after ``reset_writes()``)."""

    def __init__(self):
        super().__init__()
        self.writes: list[tuple] = []

    def reset_writes(self):
        self.writes = []

    async def upsert(self, identity, **fields):
        self.writes.append(("upsert", identity))
        return await super().upsert(identity, **fields)

    async def delete(self, identity):
        self.writes.append(("delete", identity))
        return await super().delete(identity)

    async def increment_message_count(self, identity, delta=1):
        self.writes.append(("increment_message_count", identity))
        return await super().increment_message_count(identity, delta)

    async def set_status(self, identity, status):
        self.writes.append(("set_status", identity, status))
        return await super().set_status(identity, status)

    async def expire_lapsed(self):
        self.writes.append(("expire_lapsed",))
        return await super().expire_lapsed()


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def client():
    return FakeMessagingClient()


@pytest.fixture
def credentials():
    return MemoryCredentialStore("stored-session-blob")


@pytest.fixture
async def manager(client, credentials):
    mgr = SessionManager(client, credentials, reconnect_delay=0.01, send_timeout=0.5)
    yield mgr
    await mgr.stop()


@pytest.fixture
async def connected_manager(manager):
    await manager.connect()
    await wait_until(lambda: manager.connectivity == Connectivity.CONNECTED)
    return manager
