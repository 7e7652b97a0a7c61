"""Inbound dispatcher — gate incoming messages on the sender's subscription.

The session manager hands every MessageReceived to ``submit()``, which only
enqueues. One worker task drains the queue in order, so replies to a sender
go out in the order their messages arrived and the session's read loop is
never blocked by store or network I/O.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..entitlements.models import (
    SubscriptionStatus,
    is_direct_address,
    is_entitled,
    normalize_identity,
    utcnow,
)
from ..entitlements.store import EntitlementStore, call_with_retry
from ..errors import ValidationError
from ..session.events import MessageReceived
from ..session.manager import SessionManager
from ..templates import render

logger = logging.getLogger("subgate.inbound")

DEFAULT_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class ReplyConfig:
    default_template: str
    not_registered: str
    expired: str


class DispatchOutcome(str, Enum):
    IGNORED = "ignored"
    NOT_REGISTERED = "not_registered"
    EXPIRED = "expired"
    GREETED = "greeted"


class InboundDispatcher:
    """Usage:
        dispatcher = InboundDispatcher(store, session, replies)
        session.add_message_handler(dispatcher.submit)
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: EntitlementStore,
        session: SessionManager,
        replies: ReplyConfig,
        clock: Optional[Callable[[], datetime]] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._store = store
        self._session = session
        self._replies = replies
        self._clock = clock or utcnow
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def submit(self, event: MessageReceived):
        """Enqueue without blocking. Drops the event if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Inbound queue full ({self._queue.maxsize}), dropping message from {event.sender}")

    async def start(self):
        """Start the worker task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._worker())
        logger.info("Inbound dispatcher started")

    async def stop(self):
        """Stop the worker. Queued events that were not processed are dropped."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Inbound dispatcher stopped")

    async def join(self):
        """Wait until every submitted event has been handled."""
        await self._queue.join()

    async def _worker(self):
        while self._running:
            event = await self._queue.get()
            try:
                outcome = await self.handle(event)
                logger.debug(f"Inbound from {event.sender}: {outcome.value}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling inbound message from {event.sender}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def handle(self, event: MessageReceived) -> DispatchOutcome:
        """Classify one inbound message and reply.

        Raises whatever the store or the send raised; the worker logs it.
        """
        if event.from_me:
            logger.debug(f"Ignoring own message in {event.sender}")
            return DispatchOutcome.IGNORED
        if not is_direct_address(event.sender):
            logger.debug(f"Ignoring non-direct chat {event.sender}")
            return DispatchOutcome.IGNORED

        try:
            identity = normalize_identity(event.sender)
        except ValidationError as e:
            logger.debug(f"Ignoring unparseable sender {event.sender}: {e}")
            return DispatchOutcome.IGNORED

        record = await call_with_retry(self._store.get, identity)

        if record is None:
            await self._session.send(identity, self._replies.not_registered)
            logger.info(f"Unregistered sender {identity} — sent registration notice")
            return DispatchOutcome.NOT_REGISTERED

        if not is_entitled(record, self._clock()):
            if record.status == SubscriptionStatus.ACTIVE:
                # Time lapsed but still flagged active
                await call_with_retry(self._store.set_status, identity, SubscriptionStatus.EXPIRED)
                logger.info(f"Subscription for {identity} lapsed — marked expired")
            await self._session.send(identity, self._replies.expired)
            return DispatchOutcome.EXPIRED

        text = render(
            record.message_template, record, {},
            default_template=self._replies.default_template,
        )
        await self._session.send(identity, text)
        count = await call_with_retry(self._store.increment_message_count, identity)
        logger.info(f"Greeted {identity} (messages sent: {count})")
        return DispatchOutcome.GREETED
