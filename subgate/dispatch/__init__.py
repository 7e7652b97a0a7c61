"""Message dispatch — inbound gating and outbound notifications."""

from .inbound import DispatchOutcome, InboundDispatcher, ReplyConfig
from .outbound import NotificationResult, OutboundNotifier

__all__ = [
    "DispatchOutcome",
    "InboundDispatcher",
    "ReplyConfig",
    "NotificationResult",
    "OutboundNotifier",
]
