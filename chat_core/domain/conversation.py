"""会话与消息的存储模型。

持久化格式沿用 JSON 键名 createdAt / updatedAt / timestamp（毫秒时间戳），
读取时所有字段都可缺省，以兼容旧版本或不完整的记录。
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol
from uuid import uuid4


MessageRole = Literal["user", "assistant"]

# 新会话的占位标题；自动标题只在标题仍为该值时触发
DEFAULT_TITLE = "新对话"


def now_ms() -> int:
    return int(time.time() * 1000)


def _as_ms(value: Any) -> int:
    """把存储中的时间字段转成毫秒时间戳。

    接受数字、数字字符串和 ISO 8601 字符串；无法识别时返回 0。
    """

    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return 0
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(float(text))
        except (ValueError, OverflowError):
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return 0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return 0


def _as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str
    timestamp: int

    @classmethod
    def create(cls, content: str, role: MessageRole) -> "Message":
        return cls(id=f"m-{uuid4().hex}", role=role, content=content, timestamp=now_ms())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_id: Optional[str] = None) -> "Message":
        """从存储记录还原消息；字段缺失或类型不对时取默认值，不抛异常。"""

        role = data.get("role")
        return cls(
            id=_as_text(data.get("id")) or fallback_id or f"m-{uuid4().hex}",
            role=role if role in ("user", "assistant") else "user",
            content=_as_text(data.get("content")),
            timestamp=_as_ms(data.get("timestamp")),
        )


@dataclass
class Conversation:
    id: str
    title: str
    messages: List[Message] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def create(cls, title: Optional[str] = None) -> "Conversation":
        now = now_ms()
        return cls(id=f"c-{uuid4().hex}", title=title or DEFAULT_TITLE, created_at=now, updated_at=now)

    def find_message(self, message_id: str) -> Optional[Message]:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def first_user_message(self) -> Optional[Message]:
        for msg in self.messages:
            if msg.role == "user":
                return msg
        return None

    def touch(self) -> None:
        """刷新 updated_at，保证不小于 created_at。"""

        self.updated_at = max(now_ms(), self.created_at, self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_id: Optional[str] = None) -> "Conversation":
        """从存储记录还原会话。

        缺少 id 的旧记录使用 fallback_id，保证同一份存储每次读出的 id 一致；
        消息缺少 id 时按会话 id 和位置生成。
        """

        conversation_id = _as_text(data.get("id")) or fallback_id or f"c-{uuid4().hex}"
        created = _as_ms(data.get("createdAt"))
        updated = _as_ms(data.get("updatedAt")) or created
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raw_messages = []
        messages = [
            Message.from_dict(m, fallback_id=f"{conversation_id}-m{index}")
            for index, m in enumerate(raw_messages)
            if isinstance(m, dict)
        ]
        return cls(
            id=conversation_id,
            title=_as_text(data.get("title"), DEFAULT_TITLE),
            messages=messages,
            created_at=created,
            updated_at=max(updated, created),
        )


# 仓库中的全部会话，按列表顺序展示（新会话在最前），id 唯一
ConversationSet = List[Conversation]


def find_conversation(conversations: ConversationSet, conversation_id: str) -> Optional[Conversation]:
    for conv in conversations:
        if conv.id == conversation_id:
            return conv
    return None


class KeyValueStore(Protocol):
    """底层键值存储介质（文件、内存……），只支持整体读写。"""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...
