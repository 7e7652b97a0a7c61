"""Session manager — owns the one logical WhatsApp connection.

State machine:

    disconnected ──connect()──▶ connecting ──open──▶ connected
         ▲  │ (stored credential: silent resume,     │
         │  └── no challenge, straight to open)       │
         │                                            ▼
         └──── reconnect after fixed delay ◀──── close (any cause)
                                                      │
                                  close(logged_out) ──▶ logged_out (terminal)

Only this class mutates session state. Everyone else gets a frozen
SessionSnapshot or goes through send().
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..communication.outbound import clean_outbound
from ..entitlements.models import JID_SUFFIX, jid_for, utcnow
from ..errors import NotConnectedError, ServiceUnavailableError, SubgateError, ValidationError
from .client import MessagingClient
from .credentials import CredentialStore
from .events import (
    ConnectionChanged,
    ConnectionStatus,
    CredentialsUpdated,
    DisconnectCause,
    MessageReceived,
    SessionEvent,
)

logger = logging.getLogger("subgate.session")

DEFAULT_RECONNECT_DELAY = 2.0
DEFAULT_SEND_TIMEOUT = 30.0


class Connectivity(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class SessionSnapshot:
    connectivity: Connectivity
    pairing_challenge: Optional[str]
    uptime_seconds: int
    started_at: Optional[datetime]
    messages_sent: int

    @property
    def connected(self) -> bool:
        return self.connectivity == Connectivity.CONNECTED


MessageHandler = Callable[[MessageReceived], None]
StateListener = Callable[[Connectivity, Connectivity], None]


class SessionManager:
    """Usage:
        manager = SessionManager(WacliClient(...), DatabaseCredentialStore())
        manager.add_message_handler(dispatcher.submit)
        await manager.connect()
        ...
        await manager.stop()
    """

    def __init__(
        self,
        client: MessagingClient,
        credentials: CredentialStore,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._credentials = credentials
        self._reconnect_delay = reconnect_delay
        self._send_timeout = send_timeout
        self._clock = clock

        self._state = Connectivity.DISCONNECTED
        self._challenge: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._messages_sent = 0

        self._events: asyncio.Queue = asyncio.Queue()
        self._event_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_pending = False
        self._reconnect_attempts = 0
        self._attempting = False
        self._running = False

        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()

        self._message_handlers: list[MessageHandler] = []
        self._state_listeners: list[StateListener] = []

    # ── Read side ─────────────────────────────────────────────

    @property
    def connectivity(self) -> Connectivity:
        return self._state

    def get_snapshot(self) -> SessionSnapshot:
        """Non-blocking, safe from any task."""
        uptime = 0
        if self._state == Connectivity.CONNECTED and self._started_at:
            uptime = max(0, int((self._clock() - self._started_at).total_seconds()))
        return SessionSnapshot(
            connectivity=self._state,
            pairing_challenge=self._challenge if self._state != Connectivity.CONNECTED else None,
            uptime_seconds=uptime,
            started_at=self._started_at,
            messages_sent=self._messages_sent,
        )

    def add_message_handler(self, handler: MessageHandler):
        """Register a non-blocking inbound handler (e.g. a queue submit)."""
        self._message_handlers.append(handler)

    def add_state_listener(self, listener: StateListener):
        """Called with (old, new) on every connectivity transition."""
        self._state_listeners.append(listener)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        """Start the event-processing task."""
        if self._running:
            return
        self._running = True
        self._event_task = asyncio.create_task(self._event_loop())

    async def connect(self):
        """Begin a connection (silent resume if a credential is stored).

        No-op while already connected or while an attempt is in flight.
        Also the only way out of the logged_out state.
        """
        await self.start()
        async with self._connect_lock:
            if self._state in (Connectivity.CONNECTED, Connectivity.CONNECTING) or self._attempting:
                return
            if self._state == Connectivity.LOGGED_OUT:
                self._set_state(Connectivity.DISCONNECTED)
            self._cancel_reconnect()
            await self._open()

    async def logout(self):
        """Drop the session and its credential; requires re-pairing."""
        self._cancel_reconnect()
        self._attempting = False
        self._challenge = None
        self._started_at = None
        self._set_state(Connectivity.LOGGED_OUT)
        await self._close_client()
        await self._clear_credentials()

    async def stop(self):
        """Stop tasks and close the client."""
        self._running = False
        self._cancel_reconnect()
        if self._event_task and not self._event_task.done():
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass
        self._event_task = None
        await self._close_client()
        await self._flush_credentials()
        self._attempting = False
        self._started_at = None
        if self._state != Connectivity.LOGGED_OUT:
            self._set_state(Connectivity.DISCONNECTED)
        logger.info("Session manager stopped")

    # ── Send ──────────────────────────────────────────────────

    async def send(self, identity: str, text: str) -> Optional[str]:
        """Send a text to a subscriber number (or user JID).

        Raises:
            NotConnectedError: session is not connected
            ServiceUnavailableError: send timed out or the client failed
            ValidationError: empty text or bad number
        """
        if self._state != Connectivity.CONNECTED:
            raise NotConnectedError(f"WhatsApp is not connected ({self._state.value})")

        jid = identity if identity.endswith(JID_SUFFIX) else jid_for(identity)
        text = clean_outbound(text)
        if not text:
            raise ValidationError("Message text is empty")

        async with self._send_lock:
            if self._state != Connectivity.CONNECTED:
                raise NotConnectedError(f"WhatsApp is not connected ({self._state.value})")
            try:
                message_id = await asyncio.wait_for(
                    self._client.send_text(jid, text), timeout=self._send_timeout,
                )
            except asyncio.TimeoutError:
                raise ServiceUnavailableError(
                    f"Send to {jid} timed out after {self._send_timeout:g}s"
                ) from None
            except SubgateError:
                raise
            except Exception as e:
                raise ServiceUnavailableError(f"Send to {jid} failed: {e}") from e

        self._messages_sent += 1
        logger.info(f"Sent {len(text)} chars to {jid}")
        return message_id

    # ── Connection attempts ───────────────────────────────────

    async def _open(self) -> bool:
        """Start one connection attempt. Returns False if it failed outright."""
        credentials = await self._load_credentials()
        if credentials:
            logger.info("Resuming WhatsApp session from stored credential")
        else:
            logger.info("No stored credential — waiting for pairing")
            self._set_state(Connectivity.CONNECTING)

        self._attempting = True
        try:
            await self._client.connect(credentials, self._events)
        except Exception as e:
            self._attempting = False
            logger.error(f"Connection attempt failed: {type(e).__name__}: {e}")
            self._challenge = None
            self._set_state(Connectivity.DISCONNECTED)
            self._schedule_reconnect()
            return False
        return True

    def _schedule_reconnect(self):
        if not self._running or self._state == Connectivity.LOGGED_OUT:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            # Attempt in flight; have it loop once more
            self._reconnect_pending = True
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        """Fixed-delay, unbounded retries. One instance at a time."""
        try:
            while self._running and self._state == Connectivity.DISCONNECTED:
                self._reconnect_pending = False
                await asyncio.sleep(self._reconnect_delay)
                if not self._running or self._state != Connectivity.DISCONNECTED or self._attempting:
                    break
                self._reconnect_attempts += 1
                logger.info(f"Reconnecting to WhatsApp (attempt {self._reconnect_attempts})...")
                started = await self._open()
                if started and not self._reconnect_pending:
                    break
        except asyncio.CancelledError:
            pass

    def _cancel_reconnect(self):
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        self._reconnect_pending = False

    # ── Event processing ──────────────────────────────────────

    async def _event_loop(self):
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling session event {type(event).__name__}: {e}", exc_info=True)

    async def _handle_event(self, event: SessionEvent):
        if isinstance(event, MessageReceived):
            self._on_message(event)
        elif isinstance(event, ConnectionChanged):
            await self._on_connection_changed(event)
        elif isinstance(event, CredentialsUpdated):
            if self._state == Connectivity.LOGGED_OUT:
                logger.debug("Ignoring credential update while logged out")
                return
            await self._persist_credentials(event.credentials)
        else:
            logger.warning(f"Unknown session event ignored: {event!r}")

    async def _on_connection_changed(self, event: ConnectionChanged):
        if self._state == Connectivity.LOGGED_OUT:
            logger.debug(f"Ignoring {event.status.value} while logged out")
            return

        if event.status == ConnectionStatus.CONNECTING:
            if event.pairing_challenge:
                self._challenge = event.pairing_challenge
                logger.info("Pairing challenge received — scan it from the linked-devices screen")
            self._set_state(Connectivity.CONNECTING)

        elif event.status == ConnectionStatus.OPEN:
            self._attempting = False
            self._challenge = None
            self._started_at = self._clock()
            self._reconnect_attempts = 0
            self._set_state(Connectivity.CONNECTED)
            if event.credentials:
                await self._persist_credentials(event.credentials)

        elif event.status == ConnectionStatus.CLOSE:
            self._attempting = False
            self._challenge = None
            self._started_at = None
            cause = event.cause or DisconnectCause.CONNECTION_LOST
            if cause == DisconnectCause.LOGGED_OUT:
                logger.warning("WhatsApp session logged out, re-pairing required; not reconnecting")
                self._cancel_reconnect()
                self._set_state(Connectivity.LOGGED_OUT)
                await self._close_client()
                await self._clear_credentials()
            else:
                detail = f" ({event.detail})" if event.detail else ""
                logger.warning(
                    f"WhatsApp connection closed: {cause.value}{detail}. "
                    f"Reconnecting in {self._reconnect_delay:g}s"
                )
                self._set_state(Connectivity.DISCONNECTED)
                self._schedule_reconnect()

    def _on_message(self, event: MessageReceived):
        for handler in list(self._message_handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Message handler error: {e}", exc_info=True)

    # ── Helpers ───────────────────────────────────────────────

    def _set_state(self, new: Connectivity):
        old = self._state
        if old == new:
            return
        self._state = new
        logger.info(f"WhatsApp connectivity: {old.value} → {new.value}")
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"State listener error: {e}")

    async def _load_credentials(self) -> Optional[str]:
        try:
            return await self._credentials.load()
        except Exception as e:
            logger.warning(f"Failed to load session credential, pairing instead: {e}")
            return None

    async def _persist_credentials(self, blob: str):
        try:
            await self._credentials.save(blob)
        except Exception as e:
            logger.warning(f"Failed to persist session credential: {e}")

    async def _flush_credentials(self):
        """Persist credential updates the client emitted while closing."""
        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, CredentialsUpdated) and self._state != Connectivity.LOGGED_OUT:
                await self._persist_credentials(event.credentials)

    async def _clear_credentials(self):
        try:
            await self._credentials.clear()
        except Exception as e:
            logger.warning(f"Failed to clear session credential: {e}")

    async def _close_client(self):
        try:
            await self._client.close()
        except Exception as e:
            logger.warning(f"Error closing {self._client.name} client: {e}")
