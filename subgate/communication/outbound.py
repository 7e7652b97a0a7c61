"""Outbound message processing before delivery.

Handles:
- Consecutive newline cleanup
- Message splitting for platform length limits
"""

import re

# WhatsApp accepts longer texts, but long bubbles get truncated in previews
WHATSAPP_MAX_LENGTH = 4096


def clean_outbound(text: str) -> str:
    """Collapse runs of blank lines and trim."""
    if not text:
        return ""
    return re.sub(r'\n{3,}', '\n\n', text).strip()


def split_message(text: str, max_length: int = WHATSAPP_MAX_LENGTH) -> list[str]:
    """Split a long message into chunks respecting platform length limits.

    Tries to split at newlines first, then spaces, then hard-cuts.

    Args:
        text: Message text to split
        max_length: Maximum length per chunk

    Returns:
        List of message chunks
    """
    if len(text) <= max_length:
        return [text]

    chunks = []
    remaining = text

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        # Try splitting at a newline
        split_at = remaining.rfind("\n", 0, max_length)
        if split_at == -1:
            # Try splitting at a space
            split_at = remaining.rfind(" ", 0, max_length)
        if split_at <= 0:
            # Hard cut
            split_at = max_length

        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()

    return chunks
