"""Credential management — store/retrieve credentials from DB.

All credentials are stored in the `config` table with `credential.` prefix.
"""

import logging
from typing import Any, Optional

from .models import delete_config, get_config, set_config

logger = logging.getLogger("subgate.db.credentials")

# WhatsApp session (opaque blob owned by the session manager)
CRED_WHATSAPP_SESSION = "credential.whatsapp_session"


async def get_credential(key: str, default: Any = None) -> Any:
    """Get a credential from the database."""
    return await get_config(key, default)


async def set_credential(key: str, value: Any, description: str = None) -> None:
    """Store a credential in the database."""
    await set_config(key, value, description)


async def has_credential(key: str) -> bool:
    """Check if a credential exists in the database."""
    val = await get_config(key)
    return val is not None


async def get_whatsapp_session() -> Optional[str]:
    """Get the persisted WhatsApp session blob."""
    return await get_credential(CRED_WHATSAPP_SESSION)


async def set_whatsapp_session(blob: str) -> None:
    """Store the WhatsApp session blob."""
    await set_credential(CRED_WHATSAPP_SESSION, blob, "WhatsApp session credential (resume without re-pairing)")
    logger.debug("WhatsApp session credential stored in DB")


async def clear_whatsapp_session() -> bool:
    """Remove the WhatsApp session blob (after logout)."""
    removed = await delete_config(CRED_WHATSAPP_SESSION)
    if removed:
        logger.info("WhatsApp session credential removed from DB")
    return removed
