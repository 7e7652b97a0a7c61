"""Outbound notifier — webhook-triggered order notifications."""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..entitlements.models import is_entitled, normalize_identity, utcnow
from ..entitlements.store import EntitlementStore, call_with_retry
from ..errors import ForbiddenError, NotFoundError
from ..session.manager import SessionManager
from ..templates import OrderContext, OrderLabels, build_order_summary, render

logger = logging.getLogger("subgate.notify")


@dataclass(frozen=True)
class NotificationResult:
    rendered_text: str
    correlation_id: str
    recipient: str


def _token_matches(expected: str, given: Optional[str]) -> bool:
    if not given:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


class OutboundNotifier:
    """Render a subscriber's template for an order and send it."""

    def __init__(
        self,
        store: EntitlementStore,
        session: SessionManager,
        default_template: str,
        webhook_secret: Optional[str] = None,
        labels: OrderLabels = OrderLabels(),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._session = session
        self._default_template = default_template
        self._webhook_secret = webhook_secret
        self._labels = labels
        self._clock = clock or utcnow

    async def notify(
        self,
        target_identity: str,
        order: OrderContext,
        auth_token: Optional[str] = None,
    ) -> NotificationResult:
        """Send an order notification on behalf of a subscriber.

        Args:
            target_identity: Subscriber whose template and counters are used
            order: Order details; ``customer_phone`` is the recipient when set
            auth_token: Webhook key presented by the caller

        Raises:
            ValidationError: bad phone number
            NotFoundError: subscriber unknown
            ForbiddenError: key mismatch or subscription not active
            ServiceUnavailableError: WhatsApp not connected or send timed out
        """
        identity = normalize_identity(target_identity)
        record = await call_with_retry(self._store.get, identity)
        if record is None:
            raise NotFoundError(f"Subscriber {identity} not found")

        if record.api_key:
            if not _token_matches(record.api_key, auth_token):
                raise ForbiddenError("Invalid api key")
        elif self._webhook_secret:
            if not _token_matches(self._webhook_secret, auth_token):
                raise ForbiddenError("Invalid api key")

        if not is_entitled(record, self._clock()):
            raise ForbiddenError("subscription expired")

        text = render(
            record.message_template,
            record,
            {"order": build_order_summary(order, self._labels)},
            default_template=self._default_template,
        )

        recipient = normalize_identity(order.customer_phone) if order.customer_phone else identity
        correlation_id = uuid.uuid4().hex
        await self._session.send(recipient, text)
        count = await call_with_retry(self._store.increment_message_count, identity)
        logger.info(
            f"Order notification {correlation_id} sent to {recipient} "
            f"for subscriber {identity} (messages sent: {count})"
        )
        return NotificationResult(rendered_text=text, correlation_id=correlation_id, recipient=recipient)
