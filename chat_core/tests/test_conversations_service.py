import json

import pytest

from chat_core.domain.conversation import DEFAULT_TITLE, Conversation, Message
from chat_core.domain.exceptions import NotFoundError, PersistenceError, ValidationError
from chat_core.domain.models import ChatSettings
from chat_core.infrastructure.storage.kv_store import MemoryKeyValueStore
from chat_core.session.context import AppContext
from chat_core.session.conversations import ConversationService


def _service(store=None):
    defaults = ChatSettings(backend_url="http://localhost:11434", model="m", system_prompt="sys")
    ctx = AppContext(store or MemoryKeyValueStore(), settings_defaults=defaults)
    return ConversationService(ctx, title_max_length=30), ctx


@pytest.mark.asyncio
async def test_create_selects_and_prepends():
    svc, ctx = _service()
    a = await svc.create_conversation()
    b = await svc.create_conversation("second")
    assert [c.id for c in ctx.conversations] == [b.id, a.id]
    assert ctx.current_conversation_id == b.id
    assert a.title == DEFAULT_TITLE
    assert await ctx.repository.read_current_id() == b.id


@pytest.mark.asyncio
async def test_load_restores_saved_selection():
    store = MemoryKeyValueStore()
    svc, _ = _service(store)
    a = await svc.create_conversation("a")
    await svc.create_conversation("b")
    await svc.select_conversation(a.id)

    fresh, ctx = _service(store)
    await fresh.load_conversations()
    assert ctx.current_conversation_id == a.id
    assert [c.title for c in ctx.conversations] == ["b", "a"]
    assert not ctx.is_loading


@pytest.mark.asyncio
async def test_load_selects_first_when_nothing_saved():
    svc, ctx = _service()
    await ctx.repository.write([Conversation(id="c-1", title="x"), Conversation(id="c-2", title="y")])
    await svc.load_conversations()
    assert ctx.current_conversation_id == "c-1"


@pytest.mark.asyncio
async def test_select_missing_conversation_sets_error():
    svc, ctx = _service()
    with pytest.raises(NotFoundError):
        await svc.select_conversation("c-missing")
    assert ctx.last_error == "对话不存在"


@pytest.mark.asyncio
async def test_delete_selected_falls_back_to_first_remaining():
    svc, ctx = _service()
    a = await svc.create_conversation("a")
    b = await svc.create_conversation("b")
    c = await svc.create_conversation("c")

    await svc.select_conversation(b.id)
    await svc.delete_conversation(b.id)
    assert ctx.current_conversation_id == c.id

    await svc.delete_conversation(a.id)
    assert ctx.current_conversation_id == c.id

    await svc.delete_conversation(c.id)
    assert ctx.current_conversation_id is None
    assert ctx.conversations == []
    assert await ctx.repository.read_current_id() is None


@pytest.mark.asyncio
async def test_message_crud_and_title_rename():
    svc, ctx = _service()
    conv = await svc.create_conversation()
    msg = await svc.add_message(conv.id, "hello", "user")
    await svc.update_message(conv.id, msg.id, "hello!")
    assert ctx.current_conversation.messages[0].content == "hello!"

    await svc.update_conversation_title(conv.id, "  renamed ")
    assert ctx.current_conversation.title == "renamed"
    with pytest.raises(ValidationError):
        await svc.update_conversation_title(conv.id, "  ")

    await svc.delete_message(conv.id, msg.id)
    assert ctx.current_conversation.messages == []


@pytest.mark.asyncio
async def test_generate_title_is_idempotent():
    svc, ctx = _service()
    conv = await svc.create_conversation()
    await svc.add_message(conv.id, "  What is\nasyncio?  ", "user")
    assert await svc.generate_title(conv.id) is None

    await svc.add_message(conv.id, "A library.", "assistant")
    assert await svc.generate_title(conv.id) == "What is asyncio?"
    assert await svc.generate_title(conv.id) is None
    assert ctx.current_conversation.title == "What is asyncio?"


@pytest.mark.asyncio
async def test_export_and_import():
    svc, ctx = _service()
    conv = await svc.create_conversation("exported")
    await svc.add_message(conv.id, "hi", "user")
    exported = await svc.export_conversations()
    assert json.loads(exported)[0]["title"] == "exported"
    assert "\n  " in exported

    other, other_ctx = _service()
    assert await other.import_conversations(exported) == 1
    assert await other.import_conversations(exported) == 0
    assert other_ctx.conversations[0].messages[0].content == "hi"

    added = await other.import_conversations([
        {"id": "c-dict", "title": "from dict"},
        Conversation(id="c-obj", title="obj", messages=[Message("m-1", "user", "x", 1)]),
    ])
    assert added == 2
    assert [c.id for c in other_ctx.conversations] == [conv.id, "c-dict", "c-obj"]

    with pytest.raises(ValidationError) as exc:
        await other.import_conversations("{broken")
    assert exc.value.code == "IMPORT_FORMAT_ERROR"
    assert other_ctx.last_error is not None


@pytest.mark.asyncio
async def test_clear_all_conversations():
    svc, ctx = _service()
    await svc.create_conversation()
    await svc.create_conversation()
    await svc.clear_all_conversations()
    assert ctx.conversations == []
    assert ctx.current_conversation_id is None
    assert await ctx.repository.read() == []


@pytest.mark.asyncio
async def test_failed_write_keeps_cache_and_surfaces_error():
    svc, ctx = _service(MemoryKeyValueStore(quota_bytes=600))
    conv = await svc.create_conversation()
    before = [c.to_dict() for c in ctx.conversations]

    with pytest.raises(PersistenceError):
        await svc.add_message(conv.id, "x" * 2000, "user")

    assert [c.to_dict() for c in ctx.conversations] == before
    assert ctx.last_error == "storage quota exceeded"


@pytest.mark.asyncio
async def test_listeners_notified_and_isolated():
    svc, ctx = _service()
    seen = []

    def bad_listener(c):
        raise RuntimeError("listener bug")

    unsubscribe = ctx.subscribe(lambda c: seen.append(len(c.conversations)))
    ctx.subscribe(bad_listener)
    await svc.create_conversation()
    assert seen and seen[-1] == 1

    unsubscribe()
    count = len(seen)
    await svc.create_conversation()
    assert len(seen) == count


@pytest.mark.asyncio
async def test_settings_save_and_reset():
    _, ctx = _service()
    assert (await ctx.load_settings()).model == "m"
    saved = await ctx.save_settings(streaming_enabled=True, model="qwen2")
    assert saved.streaming_enabled is True
    assert (await ctx.settings_repository.load()).model == "qwen2"
    assert (await ctx.reset_settings()).model == "m"
