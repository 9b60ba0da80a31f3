"""应用上下文。

集中持有一个本地会话所需的全部状态，由调用方构造并显式传给
ChatOrchestrator / ConversationService，不使用全局单例：

- repository / settings_repository: 持久化入口。
- conversations: 仓库的只读副本，每次写入后整体从仓库重建。
- current_conversation_id / is_loading / last_error / streaming: UI 需要展示的状态。
- settings: 当前对话设置（ChatSettings，不可变）。

状态变化通过 subscribe() 注册的监听器通知展示层。
"""

from typing import Callable, List, Optional

from chat_core.domain.conversation import Conversation, ConversationSet, KeyValueStore, find_conversation
from chat_core.domain.models import ChatSettings
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.repository import ConversationRepository, SettingsRepository
from chat_core.session.streaming import StreamingState


Listener = Callable[["AppContext"], None]


class AppContext:
    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[ChatSettings] = None,
        settings_defaults: Optional[ChatSettings] = None,
    ):
        self.repository = ConversationRepository(store)
        self.settings_repository = SettingsRepository(store, defaults=settings_defaults)
        self.settings: ChatSettings = settings or self.settings_repository.defaults
        self.conversations: ConversationSet = []
        self.current_conversation_id: Optional[str] = None
        self.is_loading = False
        self.last_error: Optional[str] = None
        self.streaming: Optional[StreamingState] = None
        self._listeners: List[Listener] = []

    # ---- 监听 ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                # 监听器异常只记录，不向编排流程传播
                logger.exception("State listener failed")

    # ---- 缓存 ----

    async def reload(self) -> ConversationSet:
        """从仓库整体重建会话缓存。"""

        self.conversations = await self.repository.read()
        self.notify()
        return self.conversations

    @property
    def current_conversation(self) -> Optional[Conversation]:
        if self.current_conversation_id is None:
            return None
        return find_conversation(self.conversations, self.current_conversation_id)

    def streaming_content_for(self, conversation_id: str, message_id: str) -> Optional[str]:
        state = self.streaming
        if state and state.conversation_id == conversation_id and state.message_id == message_id:
            return state.content
        return None

    # ---- 状态 ----

    def set_loading(self, loading: bool) -> None:
        self.is_loading = loading
        self.notify()

    def set_error(self, message: Optional[str]) -> None:
        self.last_error = message
        self.notify()

    def set_streaming(self, state: Optional[StreamingState]) -> None:
        self.streaming = state
        self.notify()

    # ---- 设置 ----

    async def load_settings(self) -> ChatSettings:
        self.settings = await self.settings_repository.load()
        self.notify()
        return self.settings

    async def save_settings(self, **updates) -> ChatSettings:
        """合并并保存设置；进行中的一轮对话使用的是开始时的快照，不受影响。"""

        self.settings = await self.settings_repository.save(self.settings.with_updates(**updates))
        self.notify()
        return self.settings

    async def reset_settings(self) -> ChatSettings:
        self.settings = await self.settings_repository.reset()
        self.notify()
        return self.settings
