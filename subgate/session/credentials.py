"""Session credential persistence.

The credential blob is opaque to everyone but the messaging client. It is
stored in the database config table when one is configured, otherwise in a
private file.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger("subgate.session.credentials")


class CredentialStore(ABC):

    @abstractmethod
    async def load(self) -> Optional[str]:
        ...

    @abstractmethod
    async def save(self, blob: str) -> None:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


class DatabaseCredentialStore(CredentialStore):
    """``credential.whatsapp_session`` in the config table."""

    async def load(self) -> Optional[str]:
        from ..db.credentials import get_whatsapp_session
        return await get_whatsapp_session()

    async def save(self, blob: str) -> None:
        from ..db.credentials import set_whatsapp_session
        await set_whatsapp_session(blob)

    async def clear(self) -> None:
        from ..db.credentials import clear_whatsapp_session
        await clear_whatsapp_session()


class FileCredentialStore(CredentialStore):
    """Single file, written atomically with mode 0600."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    async def load(self) -> Optional[str]:
        if not os.path.isfile(self.path):
            return None
        with open(self.path, encoding="utf-8") as f:
            blob = f.read().strip()
        return blob or None

    async def save(self, blob: str) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(blob)
        os.replace(tmp_path, self.path)
        logger.debug(f"Session credential written to {self.path}")

    async def clear(self) -> None:
        try:
            os.remove(self.path)
            logger.info(f"Session credential removed: {self.path}")
        except FileNotFoundError:
            pass


class MemoryCredentialStore(CredentialStore):
    """Keeps the blob in process memory (tests, throwaway sessions)."""

    def __init__(self, blob: Optional[str] = None):
        self.blob = blob

    async def load(self) -> Optional[str]:
        return self.blob

    async def save(self, blob: str) -> None:
        self.blob = blob

    async def clear(self) -> None:
        self.blob = None
