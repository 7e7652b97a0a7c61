"""subgate — subscription-gated WhatsApp notifications."""

__version__ = "0.3.0"
