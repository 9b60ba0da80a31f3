import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import PersistenceError
from chat_core.infrastructure.storage.kv_store import JsonFileKeyValueStore, MemoryKeyValueStore


@pytest.mark.asyncio
async def test_json_file_store_set_get_remove():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonFileKeyValueStore(root=root)
        assert await store.get("ai-chat-conversations") is None
        await store.set("ai-chat-conversations", '[{"id": "c1"}]')
        assert await store.get("ai-chat-conversations") == '[{"id": "c1"}]'
        assert store.path_for("ai-chat-conversations").exists()
        # 原子写入不留下临时文件
        assert not list(root.glob("*.tmp"))
        await store.remove("ai-chat-conversations")
        assert await store.get("ai-chat-conversations") is None


@pytest.mark.asyncio
async def test_json_file_store_write_error(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonFileKeyValueStore(root=Path(d))

        def boom(*a, **kw):
            raise OSError("disk full")

        monkeypatch.setattr("chat_core.infrastructure.storage.kv_store.os.replace", boom)
        with pytest.raises(PersistenceError) as exc:
            await store.set("k", "v")
        assert exc.value.code == "STORE_WRITE_ERROR"
        assert await store.get("k") is None


@pytest.mark.asyncio
async def test_memory_store_quota():
    store = MemoryKeyValueStore(quota_bytes=10)
    await store.set("a", "12345")
    await store.set("a", "1234567890")
    with pytest.raises(PersistenceError) as exc:
        await store.set("b", "x")
    assert exc.value.code == "QUOTA_EXCEEDED"
    assert await store.get("a") == "1234567890"
    assert store.keys() == ["a"]
