"""Tests for the session manager state machine."""

import asyncio

import pytest

from conftest import FakeMessagingClient, wait_until
from subgate.errors import NotConnectedError, ServiceUnavailableError, ValidationError
from subgate.session import (
    ConnectionChanged,
    ConnectionStatus,
    CredentialsUpdated,
    Connectivity,
    DisconnectCause,
    MemoryCredentialStore,
    MessageReceived,
    SessionManager,
)


def _close(cause):
    return ConnectionChanged(status=ConnectionStatus.CLOSE, cause=cause)


class TestConnect:

    async def test_resume_with_stored_credential_has_no_challenge(self, manager, client):
        transitions = []
        manager.add_state_listener(lambda old, new: transitions.append((old, new)))

        await manager.connect()
        await wait_until(lambda: manager.connectivity == Connectivity.CONNECTED)

        assert client.connect_calls == ["stored-session-blob"]
        assert transitions == [(Connectivity.DISCONNECTED, Connectivity.CONNECTED)]
        snap = manager.get_snapshot()
        assert snap.connected
        assert snap.pairing_challenge is None
        assert snap.started_at is not None

    async def test_pairing_challenge_then_open(self):
        client = FakeMessagingClient(pairing_challenge="2@ref,noise,ident,adv")
        creds = MemoryCredentialStore()
        mgr = SessionManager(client, creds, reconnect_delay=0.01)
        try:
            await mgr.connect()
            await wait_until(lambda: mgr.get_snapshot().pairing_challenge is not None)
            assert mgr.connectivity == Connectivity.CONNECTING
            assert mgr.get_snapshot().pairing_challenge == "2@ref,noise,ident,adv"

            client.emit(ConnectionChanged(status=ConnectionStatus.OPEN, credentials="fresh-blob"))
            await wait_until(lambda: mgr.connectivity == Connectivity.CONNECTED)
            assert mgr.get_snapshot().pairing_challenge is None
            assert creds.blob == "fresh-blob"
        finally:
            await mgr.stop()

    async def test_connect_is_noop_when_connected(self, connected_manager, client):
        await connected_manager.connect()
        assert len(client.connect_calls) == 1

    async def test_failed_attempt_is_retried(self, credentials):
        client = FakeMessagingClient(fail_connect=2)
        mgr = SessionManager(client, credentials, reconnect_delay=0.01)
        try:
            await mgr.connect()
            assert mgr.connectivity == Connectivity.DISCONNECTED
            await wait_until(lambda: mgr.connectivity == Connectivity.CONNECTED)
            assert len(client.connect_calls) == 3
        finally:
            await mgr.stop()


class TestClose:

    async def test_connection_lost_reconnects(self, connected_manager, client):
        client.emit(_close(DisconnectCause.CONNECTION_LOST))
        await wait_until(lambda: len(client.connect_calls) == 2)
        await wait_until(lambda: connected_manager.connectivity == Connectivity.CONNECTED)

    async def test_logged_out_is_terminal(self, connected_manager, client, credentials):
        transitions = []
        connected_manager.add_state_listener(lambda old, new: transitions.append(new))

        client.emit(_close(DisconnectCause.LOGGED_OUT))
        await wait_until(lambda: connected_manager.connectivity == Connectivity.LOGGED_OUT)
        await asyncio.sleep(0.05)  # several reconnect delays

        assert connected_manager.connectivity == Connectivity.LOGGED_OUT
        assert Connectivity.CONNECTING not in transitions
        assert len(client.connect_calls) == 1
        assert credentials.blob is None
        assert client.close_calls >= 1

    async def test_events_ignored_while_logged_out(self, connected_manager, client):
        client.emit(_close(DisconnectCause.LOGGED_OUT))
        await wait_until(lambda: connected_manager.connectivity == Connectivity.LOGGED_OUT)

        client.emit(ConnectionChanged(status=ConnectionStatus.CONNECTING, pairing_challenge="2@x,y,z"))
        await asyncio.sleep(0.02)
        assert connected_manager.connectivity == Connectivity.LOGGED_OUT
        assert connected_manager.get_snapshot().pairing_challenge is None

    async def test_connect_after_logout_pairs_again(self, connected_manager, client, credentials):
        await connected_manager.logout()
        assert connected_manager.connectivity == Connectivity.LOGGED_OUT
        assert credentials.blob is None

        await connected_manager.connect()
        assert client.connect_calls[-1] is None
        assert connected_manager.connectivity == Connectivity.CONNECTING


class TestSend:

    async def test_send_when_disconnected(self, manager):
        with pytest.raises(NotConnectedError):
            await manager.send("201234567890", "hello")

    async def test_not_connected_is_service_unavailable(self):
        assert issubclass(NotConnectedError, ServiceUnavailableError)
        assert NotConnectedError.status_code == 503

    async def test_send_ok(self, connected_manager, client):
        message_id = await connected_manager.send("+20 123 456 7890", "  hello  ")
        assert client.sent == [("201234567890@s.whatsapp.net", "hello")]
        assert message_id == "msg-1"
        assert connected_manager.get_snapshot().messages_sent == 1

    async def test_empty_text(self, connected_manager, client):
        with pytest.raises(ValidationError):
            await connected_manager.send("201234567890", "   ")
        assert client.sent == []

    async def test_timeout(self, connected_manager, client):
        client.send_delay = 2.0
        with pytest.raises(ServiceUnavailableError, match="timed out"):
            await connected_manager.send("201234567890", "hello")
        assert connected_manager.get_snapshot().messages_sent == 0

    async def test_client_error_wrapped(self, connected_manager, client):
        client.send_error = RuntimeError("wacli send text failed (rc=1)")
        with pytest.raises(ServiceUnavailableError, match="rc=1"):
            await connected_manager.send("201234567890", "hello")


class TestMessages:

    async def test_credentials_update_is_persisted(self, connected_manager, client, credentials):
        client.emit(CredentialsUpdated(credentials="rotated-blob"))
        await wait_until(lambda: credentials.blob == "rotated-blob")

    async def test_handlers_receive_messages(self, connected_manager, client):
        got = []
        connected_manager.add_message_handler(got.append)
        connected_manager.add_message_handler(lambda e: 1 / 0)  # failing handler is isolated
        event = MessageReceived(sender="201234567890@s.whatsapp.net", text="hi")

        client.emit(event)
        await wait_until(lambda: got)
        assert got == [event]

    async def test_credentials_update_ignored_while_logged_out(self, connected_manager, client, credentials):
        client.emit(_close(DisconnectCause.LOGGED_OUT))
        await wait_until(lambda: connected_manager.connectivity == Connectivity.LOGGED_OUT)

        client.emit(CredentialsUpdated(credentials="dead-session-blob"))
        await asyncio.sleep(0.02)
        assert credentials.blob is None

    async def test_logout_discards_credentials_emitted_on_close(self, connected_manager, client, credentials):
        client.credentials_on_close = "closing-blob"
        await connected_manager.logout()
        await asyncio.sleep(0.02)
        assert credentials.blob is None

    async def test_stop_persists_credentials_emitted_on_close(self, connected_manager, client, credentials):
        client.credentials_on_close = "closing-blob"
        await connected_manager.stop()
        assert credentials.blob == "closing-blob"
