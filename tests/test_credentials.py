"""Tests for session credential stores."""

import os

from subgate.session import FileCredentialStore, MemoryCredentialStore


class TestFileCredentialStore:

    async def test_missing_file(self, tmp_path):
        assert await FileCredentialStore(str(tmp_path / "none.cred")).load() is None

    async def test_save_load_clear(self, tmp_path):
        store = FileCredentialStore(str(tmp_path / "sub" / "session.cred"))
        await store.save("blob-1")

        assert await store.load() == "blob-1"
        assert os.stat(store.path).st_mode & 0o777 == 0o600

        await store.save("blob-2")
        assert await store.load() == "blob-2"

        await store.clear()
        assert await store.load() is None
        await store.clear()  # idempotent


async def test_memory_store():
    store = MemoryCredentialStore()
    assert await store.load() is None
    await store.save("x")
    assert await store.load() == "x"
    await store.clear()
    assert store.blob is None
