"""会话管理服务。

提供会话的增删改查、选中切换、导入导出与自动标题。每个修改都走
ConversationRepository 的“读最新、整体写回”，成功后再从仓库重建
AppContext 中的缓存；写入失败时缓存保持上一次的正确状态。

业务异常会写入 AppContext.last_error 作为用户提示，并继续向上抛出。
"""

import functools
import json
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, Union

from chat_core.config.settings import settings
from chat_core.domain.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationSet,
    Message,
    MessageRole,
    find_conversation,
)
from chat_core.domain.exceptions import BusinessError, NotFoundError, ValidationError
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.repository import parse_conversations
from chat_core.session.context import AppContext
from chat_core.session.title import derive_title


T = TypeVar("T")


def _surfaced(action: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """把业务异常写入 last_error 并记录日志，然后原样抛出。"""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(self: "ConversationService", *args: Any, **kwargs: Any) -> T:
            try:
                return await fn(self, *args, **kwargs)
            except BusinessError as e:
                self._context.set_error(e.message)
                log_event(logging.ERROR, f"{action} failed", {"action": action}, code=e.code, error=e.message, **e.extra)
                raise

        return wrapper

    return decorator


class ConversationService:
    def __init__(self, context: AppContext, title_max_length: Optional[int] = None):
        self._context = context
        self._title_max_length = title_max_length or settings.title_max_length

    @property
    def context(self) -> AppContext:
        return self._context

    @_surfaced("load_conversations")
    async def load_conversations(self) -> ConversationSet:
        """加载全部会话，并恢复上次选中的会话（不存在时选第一个）。"""

        ctx = self._context
        ctx.set_loading(True)
        try:
            await ctx.repository.repair_missing_ids()
            conversations = await ctx.reload()
            if ctx.current_conversation_id is None:
                saved_id = await ctx.repository.read_current_id()
                if saved_id and find_conversation(conversations, saved_id):
                    ctx.current_conversation_id = saved_id
                elif conversations:
                    ctx.current_conversation_id = conversations[0].id
            return conversations
        finally:
            ctx.set_loading(False)

    @_surfaced("create_conversation")
    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        conv = await self._context.repository.create_conversation(title)
        await self._context.reload()
        await self._select(conv.id)
        log_event(logging.INFO, "Created new conversation", {"conversation_id": conv.id})
        return conv

    @_surfaced("select_conversation")
    async def select_conversation(self, conversation_id: str) -> Conversation:
        conv = find_conversation(self._context.conversations, conversation_id)
        if conv is None:
            raise NotFoundError(
                code="CONVERSATION_NOT_FOUND",
                message="对话不存在",
                conversation_id=conversation_id,
            )
        await self._select(conversation_id)
        return conv

    @_surfaced("add_message")
    async def add_message(self, conversation_id: str, content: str, role: MessageRole) -> Message:
        message = await self._context.repository.append_message(conversation_id, content, role)
        await self._context.reload()
        return message

    @_surfaced("update_message")
    async def update_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        allow_role_fallback: bool = False,
    ) -> Message:
        message = await self._context.repository.update_message_content(
            conversation_id, message_id, content, allow_role_fallback=allow_role_fallback
        )
        await self._context.reload()
        return message

    @_surfaced("delete_message")
    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        await self._context.repository.delete_message(conversation_id, message_id)
        await self._context.reload()

    @_surfaced("delete_conversation")
    async def delete_conversation(self, conversation_id: str) -> None:
        """删除会话；若删除的是当前会话，切换到剩余的第一个，没有则置空。"""

        ctx = self._context
        await ctx.repository.delete_conversation(conversation_id)
        remaining = await ctx.reload()
        if ctx.current_conversation_id == conversation_id:
            await self._select(remaining[0].id if remaining else None)
        log_event(logging.INFO, "Deleted conversation", {"conversation_id": conversation_id})

    @_surfaced("update_conversation_title")
    async def update_conversation_title(self, conversation_id: str, title: str) -> Conversation:
        if not title.strip():
            raise ValidationError(code="EMPTY_TITLE", message="标题不能为空", conversation_id=conversation_id)
        conv = await self._context.repository.rename_conversation(conversation_id, title.strip())
        await self._context.reload()
        return conv

    @_surfaced("generate_title")
    async def generate_title(self, conversation_id: str) -> Optional[str]:
        """为刚完成首轮对话的会话生成标题。

        只有最新状态下恰好两条消息且标题仍为默认值时才会改名，
        所以重复调用不会再次生成。返回新标题，未生成时返回 None。
        """

        return await self.store_derived_title(conversation_id)

    async def store_derived_title(self, conversation_id: str) -> Optional[str]:
        """同 generate_title，但失败时不写 last_error，由调用方决定如何处理。"""

        def derive(conv: Conversation) -> Optional[str]:
            if conv.title != DEFAULT_TITLE or len(conv.messages) != 2:
                return None
            first = conv.first_user_message()
            if first is None:
                return None
            return derive_title(first.content, self._title_max_length)

        title = await self._context.repository.rename_if(conversation_id, derive)
        if title is not None:
            await self._context.reload()
            log_event(logging.INFO, "Generated conversation title", {"conversation_id": conversation_id}, title=title)
        return title

    async def export_conversations(self) -> str:
        """导出全部会话为带缩进的 JSON 文本。"""

        conversations = await self._context.repository.read()
        return json.dumps([c.to_dict() for c in conversations], ensure_ascii=False, indent=2)

    @_surfaced("import_conversations")
    async def import_conversations(self, payload: Union[str, List[dict], ConversationSet]) -> int:
        """导入会话，跳过已存在的 id，返回实际导入数量。"""

        if isinstance(payload, str):
            try:
                incoming = parse_conversations(payload)
            except ValueError as e:
                raise ValidationError(code="IMPORT_FORMAT_ERROR", message=f"导入数据格式不正确: {e}")
        else:
            incoming = [c if isinstance(c, Conversation) else Conversation.from_dict(c) for c in payload]
        ctx = self._context
        ctx.set_loading(True)
        try:
            added = await ctx.repository.import_conversations(incoming)
            await ctx.reload()
        finally:
            ctx.set_loading(False)
        log_event(logging.INFO, "Imported conversations", {}, imported=added, offered=len(incoming))
        return added

    @_surfaced("clear_all_conversations")
    async def clear_all_conversations(self) -> None:
        await self._context.repository.clear()
        await self._context.reload()
        await self._select(None)

    async def _select(self, conversation_id: Optional[str]) -> None:
        ctx = self._context
        ctx.current_conversation_id = conversation_id
        await ctx.repository.write_current_id(conversation_id)
        ctx.notify()
