"""对外 API 服务模块。

提供简化的函数接口供 UI 层调用，内部持有一个默认的 AppContext。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.kv_store import JsonFileKeyValueStore
from chat_core.providers import create_client
from chat_core.session.context import AppContext
from chat_core.session.orchestrator import ChatOrchestrator


_context: Optional[AppContext] = None
_orchestrator: Optional[ChatOrchestrator] = None


def get_default_orchestrator() -> ChatOrchestrator:
    """获取默认的 ChatOrchestrator 实例（单例）。"""
    global _context, _orchestrator
    if _context is None:
        _context = AppContext(JsonFileKeyValueStore(root=settings.storage_root))
    if _orchestrator is None:
        _orchestrator = ChatOrchestrator(_context, create_client())
    return _orchestrator


async def initialize() -> Dict[str, Any]:
    """加载设置与会话列表，返回当前界面状态。"""
    orchestrator = get_default_orchestrator()
    await orchestrator.conversations.context.load_settings()
    await orchestrator.conversations.load_conversations()
    return current_state()


async def send_message(text: str) -> Dict[str, Any]:
    """发送一条消息并等待本轮结束。

    Returns:
        包含会话ID、两条消息ID、最终状态、回复内容与标题的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    orchestrator = get_default_orchestrator()
    try:
        result = await orchestrator.send_message(text)
    except Exception as e:
        logger.error(f"Send message failed: {e}", extra={"extra": {
            "conversation_id": orchestrator.conversations.context.current_conversation_id,
            "error": str(e),
        }})
        raise
    return {
        "conversation_id": result.conversation_id,
        "user_message_id": result.user_message_id,
        "assistant_message_id": result.assistant_message_id,
        "state": result.state.value,
        "content": result.content,
        "title": result.title,
        "error": result.error,
    }


def cancel_generation() -> bool:
    return get_default_orchestrator().cancel_generation()


async def select_conversation(conversation_id: str) -> None:
    await get_default_orchestrator().conversations.select_conversation(conversation_id)


async def delete_conversation(conversation_id: str) -> None:
    await get_default_orchestrator().conversations.delete_conversation(conversation_id)


def list_conversations() -> List[Dict[str, Any]]:
    """列出缓存中的所有会话（不含消息）。"""
    context = get_default_orchestrator().conversations.context
    return [
        {
            "id": c.id,
            "title": c.title,
            "message_count": len(c.messages),
            "created_at": c.created_at,
            "updated_at": c.updated_at,
        }
        for c in context.conversations
    ]


def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息；正在流式生成的消息返回其瞬时内容。"""
    context = get_default_orchestrator().conversations.context
    conv = next((c for c in context.conversations if c.id == conversation_id), None)
    if conv is None:
        return []
    items = []
    for m in conv.messages:
        live = context.streaming_content_for(conversation_id, m.id)
        items.append({
            "id": m.id,
            "role": m.role,
            "content": live if live is not None else m.content,
            "timestamp": m.timestamp,
            "streaming": live is not None,
        })
    return items


def current_state() -> Dict[str, Any]:
    """UI 需要的全部展示状态。"""
    context = get_default_orchestrator().conversations.context
    streaming = context.streaming
    return {
        "conversations": list_conversations(),
        "current_conversation_id": context.current_conversation_id,
        "streaming": None if streaming is None else {
            "conversation_id": streaming.conversation_id,
            "message_id": streaming.message_id,
            "content": streaming.content,
        },
        "is_loading": context.is_loading,
        "error": context.last_error,
    }
