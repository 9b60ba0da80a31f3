"""会话仓库与设置仓库。

ConversationRepository 是整个应用唯一的真实数据源。所有修改都遵循
“先读最新、再整体写回”：

    1. read()    从存储读出当前完整会话集（每次都是新反序列化的副本）；
    2. fn(set)   在这份副本上计算修改；
    3. write()   把整份会话集写回。

不做增量 patch，也不允许调用方持有某次 read() 的结果跨 await 后再写回。
后写者覆盖先写者，但每个写者都从它能看到的最新状态出发，这样慢的标题写入
不会把快的流式完成写入冲掉。同一会话上两个写者都在对方写入前完成读取时
仍可能丢更新，这里不加锁。
"""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import urlparse

from chat_core.config.settings import settings as app_config
from chat_core.domain.conversation import (
    Conversation,
    ConversationSet,
    KeyValueStore,
    Message,
    MessageRole,
    find_conversation,
    now_ms,
)
from chat_core.domain.exceptions import NotFoundError, PersistenceError
from chat_core.domain.models import ChatSettings
from chat_core.infrastructure.logging.logger import logger
from chat_core.prompts import load_default_system_prompt


CONVERSATIONS_KEY = "ai-chat-conversations"
SETTINGS_KEY = "ai-chat-settings"
CURRENT_CONVERSATION_KEY = "ai-chat-current"
STORAGE_KEYS = (CONVERSATIONS_KEY, SETTINGS_KEY, CURRENT_CONVERSATION_KEY)

T = TypeVar("T")


def serialize_conversations(conversations: ConversationSet) -> str:
    try:
        return json.dumps([c.to_dict() for c in conversations], ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise PersistenceError(code="SERIALIZE_ERROR", message=str(e))


def parse_conversations(raw: str) -> ConversationSet:
    """解析 JSON 文本为会话集。

    整体不是 JSON 数组时抛 ValueError；单条记录无法还原时记日志并跳过，
    不影响其余记录。缺少 id 的记录按位置得到固定 id。
    """

    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("conversation payload is not a list")
    items: List[Conversation] = []
    seen: set[str] = set()
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            logger.warning("Skipped non-object conversation record", extra={"extra": {"index": index}})
            continue
        try:
            conv = Conversation.from_dict(entry, fallback_id=f"c-legacy-{index}")
        except (TypeError, ValueError) as e:
            logger.warning(
                "Skipped unreadable conversation record",
                extra={"extra": {"index": index, "error": str(e)}},
            )
            continue
        if conv.id in seen:
            continue
        seen.add(conv.id)
        items.append(conv)
    return items


class ConversationRepository:
    def __init__(self, store: KeyValueStore):
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def read(self) -> ConversationSet:
        """读出当前会话集；存储内容整体无法解析时记错误日志并按空集展示。"""

        raw = await self._store.get(CONVERSATIONS_KEY)
        if not raw:
            return []
        try:
            return parse_conversations(raw)
        except ValueError as e:
            # json.JSONDecodeError 也是 ValueError
            logger.error(
                "Failed to decode conversations, treating as empty",
                extra={"extra": {"error": str(e)}},
            )
            return []

    async def read_for_write(self) -> ConversationSet:
        """同 read()，但存储内容无法解析时抛 PersistenceError，避免用空集覆盖原数据。"""

        raw = await self._store.get(CONVERSATIONS_KEY)
        if not raw:
            return []
        try:
            return parse_conversations(raw)
        except ValueError as e:
            logger.error(
                "Refusing to overwrite undecodable conversations",
                extra={"extra": {"error": str(e)}},
            )
            raise PersistenceError(
                code="STORE_CORRUPTED",
                message="会话数据已损坏，已停止写入以免覆盖",
                detail=str(e),
            )

    async def write(self, conversations: ConversationSet) -> None:
        payload = serialize_conversations(conversations)
        await self._store.set(CONVERSATIONS_KEY, payload)

    async def mutate(self, fn: Callable[[ConversationSet], T]) -> Tuple[T, ConversationSet]:
        """读最新会话集，交给 fn 原地修改，然后整体写回。

        fn 拿到的是本次读取新反序列化的私有副本，可以直接修改；
        fn 抛出的异常会中止本次修改，不发生写入。存储内容无法解析时
        抛 PersistenceError，同样不写入。
        """

        current = await self.read_for_write()
        result = fn(current)
        await self.write(current)
        return result, current

    async def repair_missing_ids(self) -> int:
        """把缺少 id 的旧记录连同补上的 id 写回存储，返回补写的条数。"""

        raw = await self._store.get(CONVERSATIONS_KEY)
        if not raw:
            return 0
        try:
            data = json.loads(raw)
        except ValueError:
            return 0
        if not isinstance(data, list):
            return 0
        missing = sum(1 for entry in data if isinstance(entry, dict) and not entry.get("id"))
        if missing:
            await self.mutate(lambda conversations: None)
            logger.warning("Assigned ids to legacy conversation records", extra={"extra": {"count": missing}})
        return missing

    # ---- 逻辑修改 ----

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        conv = Conversation.create(title)

        def apply(conversations: ConversationSet) -> Conversation:
            conversations.insert(0, conv)
            return conv

        created, _ = await self.mutate(apply)
        return created

    async def append_message(self, conversation_id: str, content: str, role: MessageRole) -> Message:
        message = Message.create(content, role)

        def apply(conversations: ConversationSet) -> Message:
            conv = self._require(conversations, conversation_id)
            conv.messages.append(message)
            conv.touch()
            return message

        appended, _ = await self.mutate(apply)
        return appended

    async def update_message_content(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        allow_role_fallback: bool = False,
    ) -> Message:
        """按 id 改写消息内容，同时刷新消息 timestamp。

        allow_role_fallback=True 时，id 找不到会退回到最后一条助手消息；
        这在并发修改下可能改错消息，因此每次回退都记 warning。
        """

        def apply(conversations: ConversationSet) -> Message:
            conv = self._require(conversations, conversation_id)
            target = conv.find_message(message_id)
            if target is None and allow_role_fallback:
                target = next((m for m in reversed(conv.messages) if m.role == "assistant"), None)
                if target is not None:
                    logger.warning(
                        "Message id not found, falling back to last assistant message",
                        extra={"extra": {
                            "conversation_id": conversation_id,
                            "requested_message_id": message_id,
                            "fallback_message_id": target.id,
                        }},
                    )
            if target is None:
                raise NotFoundError(
                    code="MESSAGE_NOT_FOUND",
                    message=f"消息不存在: {message_id}",
                    conversation_id=conversation_id,
                    message_id=message_id,
                )
            target.content = content
            target.timestamp = max(now_ms(), target.timestamp)
            conv.touch()
            return target

        updated, _ = await self.mutate(apply)
        return updated

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        def apply(conversations: ConversationSet) -> Conversation:
            conv = self._require(conversations, conversation_id)
            conv.title = title
            conv.touch()
            return conv

        renamed, _ = await self.mutate(apply)
        return renamed

    async def rename_if(
        self, conversation_id: str, derive: Callable[[Conversation], Optional[str]]
    ) -> Optional[str]:
        """基于最新会话决定是否改名：derive 返回 None 时不写入。"""

        current = await self.read_for_write()
        conv = self._require(current, conversation_id)
        title = derive(conv)
        if title is None:
            return None
        conv.title = title
        conv.touch()
        await self.write(current)
        return title

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        def apply(conversations: ConversationSet) -> None:
            conv = self._require(conversations, conversation_id)
            if conv.find_message(message_id) is None:
                raise NotFoundError(
                    code="MESSAGE_NOT_FOUND",
                    message=f"消息不存在: {message_id}",
                    conversation_id=conversation_id,
                    message_id=message_id,
                )
            conv.messages = [m for m in conv.messages if m.id != message_id]
            conv.touch()

        await self.mutate(apply)

    async def delete_conversation(self, conversation_id: str) -> ConversationSet:
        def apply(conversations: ConversationSet) -> None:
            self._require(conversations, conversation_id)
            conversations[:] = [c for c in conversations if c.id != conversation_id]

        _, remaining = await self.mutate(apply)
        return remaining

    async def clear(self) -> None:
        await self.write([])

    async def import_conversations(self, incoming: ConversationSet) -> int:
        """追加导入的会话，已存在的 id 跳过；返回实际导入数量。"""

        def apply(conversations: ConversationSet) -> int:
            existing = {c.id for c in conversations}
            added = 0
            for conv in incoming:
                if conv.id in existing:
                    continue
                existing.add(conv.id)
                conversations.append(conv)
                added += 1
            return added

        added, _ = await self.mutate(apply)
        return added

    # ---- 当前选中会话 ----

    async def read_current_id(self) -> Optional[str]:
        return await self._store.get(CURRENT_CONVERSATION_KEY) or None

    async def write_current_id(self, conversation_id: Optional[str]) -> None:
        if conversation_id:
            await self._store.set(CURRENT_CONVERSATION_KEY, conversation_id)
        else:
            await self._store.remove(CURRENT_CONVERSATION_KEY)

    @staticmethod
    def _require(conversations: ConversationSet, conversation_id: str) -> Conversation:
        conv = find_conversation(conversations, conversation_id)
        if conv is None:
            raise NotFoundError(
                code="CONVERSATION_NOT_FOUND",
                message=f"对话不存在: {conversation_id}",
                conversation_id=conversation_id,
            )
        return conv


def default_chat_settings() -> ChatSettings:
    """由进程配置与默认系统提示词构造首次启动时的对话设置。"""

    return ChatSettings(
        backend_url=app_config.default_backend_url,
        model=app_config.default_model,
        system_prompt=app_config.default_system_prompt or load_default_system_prompt(),
    )


class SettingsRepository:
    """对话设置的持久化：单 key 下的扁平 JSON 记录，读取时合并到默认值上。"""

    def __init__(self, store: KeyValueStore, defaults: Optional[ChatSettings] = None):
        self._store = store
        self._defaults = defaults or default_chat_settings()

    @property
    def defaults(self) -> ChatSettings:
        return self._defaults

    async def load(self) -> ChatSettings:
        raw = await self._store.get(SETTINGS_KEY)
        if not raw:
            return self._defaults
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("Failed to decode settings, using defaults", extra={"extra": {"error": str(e)}})
            return self._defaults
        if not isinstance(data, dict):
            return self._defaults
        try:
            return ChatSettings.from_dict(data, base=self._defaults)
        except TypeError as e:
            logger.warning("Invalid settings record, using defaults", extra={"extra": {"error": str(e)}})
            return self._defaults

    async def save(self, chat_settings: ChatSettings) -> ChatSettings:
        try:
            payload = json.dumps(chat_settings.to_dict(), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(code="SERIALIZE_ERROR", message=str(e))
        await self._store.set(SETTINGS_KEY, payload)
        logger.info("Saved chat settings", extra={"extra": {"model": chat_settings.model}})
        return chat_settings

    async def update(self, **updates: Any) -> ChatSettings:
        current = await self.load()
        return await self.save(current.with_updates(**updates))

    async def reset(self) -> ChatSettings:
        return await self.save(self._defaults)

    @staticmethod
    def validate(updates: Dict[str, Any]) -> List[str]:
        """校验部分设置，返回错误描述列表（为空表示通过）。"""

        errors: List[str] = []
        url = updates.get("backend_url")
        if url is not None:
            parsed = urlparse(str(url))
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append("服务器地址格式不正确")
        temperature = updates.get("temperature")
        if temperature is not None and not (0 <= float(temperature) <= 2):
            errors.append("温度值必须在 0-2 之间")
        max_tokens = updates.get("max_output_tokens")
        if max_tokens is not None and not (1 <= int(max_tokens) <= 8192):
            errors.append("最大令牌数必须在 1-8192 之间")
        return errors
