import json

import pytest

from chat_core.domain.conversation import DEFAULT_TITLE, Conversation, Message
from chat_core.domain.exceptions import NotFoundError, PersistenceError
from chat_core.domain.models import ChatSettings
from chat_core.infrastructure.storage.kv_store import JsonFileKeyValueStore, MemoryKeyValueStore
from chat_core.infrastructure.storage.repository import (
    CONVERSATIONS_KEY,
    SETTINGS_KEY,
    ConversationRepository,
    SettingsRepository,
)


def _sample_set():
    return [
        Conversation(
            id="c-2",
            title="第二个",
            messages=[
                Message("m-1", "user", "你好  \n", 1700000000001),
                Message("m-2", "assistant", "**hi**", 1700000000002),
            ],
            created_at=1700000000000,
            updated_at=1700000000002,
        ),
        Conversation(id="c-1", title=DEFAULT_TITLE, messages=[], created_at=5, updated_at=5),
    ]


@pytest.mark.asyncio
async def test_round_trip_is_lossless(tmp_path):
    repo = ConversationRepository(JsonFileKeyValueStore(root=tmp_path))
    original = _sample_set()
    await repo.write(original)
    assert await repo.read() == original


@pytest.mark.asyncio
async def test_read_returns_fresh_copies():
    repo = ConversationRepository(MemoryKeyValueStore())
    await repo.write(_sample_set())
    first = await repo.read()
    first[0].messages.clear()
    second = await repo.read()
    assert len(second[0].messages) == 2


@pytest.mark.asyncio
async def test_corrupt_payload_reads_as_empty():
    store = MemoryKeyValueStore()
    await store.set(CONVERSATIONS_KEY, "{not json")
    repo = ConversationRepository(store)
    assert await repo.read() == []
    await store.set(CONVERSATIONS_KEY, json.dumps({"id": "c1"}))
    assert await repo.read() == []


@pytest.mark.asyncio
async def test_create_and_append_messages():
    repo = ConversationRepository(MemoryKeyValueStore())
    older = await repo.create_conversation("older")
    conv = await repo.create_conversation()
    user = await repo.append_message(conv.id, "Hi", "user")
    assistant = await repo.append_message(conv.id, "", "assistant")

    stored = await repo.read()
    assert [c.id for c in stored] == [conv.id, older.id]
    assert stored[0].title == DEFAULT_TITLE
    assert [(m.id, m.role, m.content) for m in stored[0].messages] == [
        (user.id, "user", "Hi"),
        (assistant.id, "assistant", ""),
    ]
    assert stored[0].updated_at >= stored[0].created_at


@pytest.mark.asyncio
async def test_writers_start_from_fresh_state():
    """两个写者交替时，后写者基于最新状态，先写入的内容不会丢。"""

    repo = ConversationRepository(MemoryKeyValueStore())
    conv = await repo.create_conversation()
    await repo.append_message(conv.id, "Hi", "user")
    placeholder = await repo.append_message(conv.id, "", "assistant")

    # 标题写入与最终内容写入交替发生
    await repo.rename_conversation(conv.id, "Hi")
    await repo.update_message_content(conv.id, placeholder.id, "Hello!")

    stored = (await repo.read())[0]
    assert stored.title == "Hi"
    assert stored.messages[1].content == "Hello!"


@pytest.mark.asyncio
async def test_update_message_by_id_only():
    repo = ConversationRepository(MemoryKeyValueStore())
    conv = await repo.create_conversation()
    first = await repo.append_message(conv.id, "a", "assistant")
    await repo.append_message(conv.id, "b", "assistant")

    updated = await repo.update_message_content(conv.id, first.id, "A")
    assert updated.id == first.id
    stored = (await repo.read())[0]
    assert [m.content for m in stored.messages] == ["A", "b"]

    with pytest.raises(NotFoundError) as exc:
        await repo.update_message_content(conv.id, "m-missing", "x")
    assert exc.value.code == "MESSAGE_NOT_FOUND"
    assert [m.content for m in (await repo.read())[0].messages] == ["A", "b"]


@pytest.mark.asyncio
async def test_update_message_role_fallback_is_opt_in():
    repo = ConversationRepository(MemoryKeyValueStore())
    conv = await repo.create_conversation()
    await repo.append_message(conv.id, "q", "user")
    last = await repo.append_message(conv.id, "", "assistant")

    updated = await repo.update_message_content(conv.id, "m-gone", "fallback", allow_role_fallback=True)
    assert updated.id == last.id
    assert (await repo.read())[0].messages[1].content == "fallback"


@pytest.mark.asyncio
async def test_missing_conversation_raises_not_found():
    repo = ConversationRepository(MemoryKeyValueStore())
    with pytest.raises(NotFoundError) as exc:
        await repo.append_message("c-nope", "x", "user")
    assert exc.value.code == "CONVERSATION_NOT_FOUND"
    assert await repo.read() == []


@pytest.mark.asyncio
async def test_failed_write_leaves_storage_unchanged():
    store = MemoryKeyValueStore(quota_bytes=400)
    repo = ConversationRepository(store)
    conv = await repo.create_conversation()
    before = await store.get(CONVERSATIONS_KEY)
    with pytest.raises(PersistenceError):
        await repo.append_message(conv.id, "x" * 1000, "user")
    assert await store.get(CONVERSATIONS_KEY) == before


@pytest.mark.asyncio
async def test_delete_clear_and_import():
    repo = ConversationRepository(MemoryKeyValueStore())
    a = await repo.create_conversation("a")
    b = await repo.create_conversation("b")
    msg = await repo.append_message(a.id, "x", "user")
    await repo.delete_message(a.id, msg.id)
    assert (await repo.read())[1].messages == []

    remaining = await repo.delete_conversation(b.id)
    assert [c.id for c in remaining] == [a.id]

    added = await repo.import_conversations([Conversation(id=a.id, title="dup"), Conversation(id="c-new", title="n")])
    assert added == 1
    assert [c.title for c in await repo.read()] == ["a", "n"]

    await repo.clear()
    assert await repo.read() == []


@pytest.mark.asyncio
async def test_rename_if_skips_write_when_derive_returns_none():
    store = MemoryKeyValueStore()
    repo = ConversationRepository(store)
    conv = await repo.create_conversation()
    before = await store.get(CONVERSATIONS_KEY)
    assert await repo.rename_if(conv.id, lambda c: None) is None
    assert await store.get(CONVERSATIONS_KEY) == before
    assert await repo.rename_if(conv.id, lambda c: "T") == "T"
    assert (await repo.read())[0].title == "T"


@pytest.mark.asyncio
async def test_current_id_persistence():
    repo = ConversationRepository(MemoryKeyValueStore())
    assert await repo.read_current_id() is None
    await repo.write_current_id("c-1")
    assert await repo.read_current_id() == "c-1"
    await repo.write_current_id(None)
    assert await repo.read_current_id() is None


@pytest.mark.asyncio
async def test_settings_repository_merges_over_defaults():
    store = MemoryKeyValueStore()
    defaults = ChatSettings(backend_url="http://localhost:11434", model="llama3", system_prompt="sys")
    repo = SettingsRepository(store, defaults=defaults)
    assert await repo.load() == defaults

    await store.set(SETTINGS_KEY, json.dumps({"temperature": 1.5, "streaming_enabled": True}))
    loaded = await repo.load()
    assert loaded.temperature == 1.5
    assert loaded.streaming_enabled is True
    assert loaded.model == "llama3"

    saved = await repo.update(model="qwen2")
    assert saved.model == "qwen2"
    assert (await repo.load()).temperature == 1.5

    assert await repo.reset() == defaults

    await store.set(SETTINGS_KEY, "oops")
    assert await repo.load() == defaults


def test_settings_validation():
    assert SettingsRepository.validate({"backend_url": "http://localhost:11434", "temperature": 0.7}) == []
    errors = SettingsRepository.validate({"backend_url": "localhost", "temperature": 3, "max_output_tokens": 0})
    assert len(errors) == 3


@pytest.mark.asyncio
async def test_one_bad_record_does_not_hide_the_others():
    store = MemoryKeyValueStore()
    await store.set(CONVERSATIONS_KEY, json.dumps([
        {"id": "c-good", "title": "good", "messages": [], "createdAt": 1, "updatedAt": 2},
        {
            "id": "c-bad",
            "title": 42,
            "createdAt": "2024-01-01T00:00:00Z",
            "updatedAt": None,
            "messages": [{"id": "m-1", "content": 7, "timestamp": "2024-01-01T00:00:00Z"}, None],
        },
        "junk",
    ]))
    repo = ConversationRepository(store)

    stored = await repo.read()
    assert [c.id for c in stored] == ["c-good", "c-bad"]
    bad = stored[1]
    assert bad.title == "42"
    assert bad.created_at == 1704067200000
    assert bad.updated_at == bad.created_at
    assert [(m.content, m.timestamp) for m in bad.messages] == [("7", 1704067200000)]

    await repo.create_conversation("new")
    assert [c.id for c in await repo.read()][1:] == ["c-good", "c-bad"]


@pytest.mark.asyncio
async def test_undecodable_store_is_never_overwritten():
    store = MemoryKeyValueStore()
    await store.set(CONVERSATIONS_KEY, "{not json")
    repo = ConversationRepository(store)

    with pytest.raises(PersistenceError) as exc:
        await repo.create_conversation()
    assert exc.value.code == "STORE_CORRUPTED"
    with pytest.raises(PersistenceError):
        await repo.rename_if("c-1", lambda c: "t")
    assert await store.get(CONVERSATIONS_KEY) == "{not json"


@pytest.mark.asyncio
async def test_records_without_ids_read_back_with_stable_ids():
    store = MemoryKeyValueStore()
    await store.set(CONVERSATIONS_KEY, json.dumps([
        {"title": "old", "messages": [{"role": "user", "content": "q"}]},
        {"id": "c-2", "title": "kept"},
    ]))
    repo = ConversationRepository(store)

    first = await repo.read()
    second = await repo.read()
    assert [c.id for c in first] == [c.id for c in second]
    assert first[0].messages[0].id == second[0].messages[0].id

    assert await repo.repair_missing_ids() == 1
    assert json.loads(await store.get(CONVERSATIONS_KEY))[0]["id"] == first[0].id
    assert await repo.repair_missing_ids() == 0

    await repo.create_conversation("new")
    assert [c.id for c in await repo.read()][1:] == [first[0].id, "c-2"]
