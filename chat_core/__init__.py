"""Chat Core 顶层包。

该包提供本地对话客户端的核心实现，
包括配置加载、领域模型、生成后端适配、会话仓库、
单轮对话编排（流式累积与取消）以及自动标题等能力。
"""

from chat_core.session import AppContext, ChatOrchestrator, ConversationService, TurnResult, TurnState

__all__ = ["AppContext", "ChatOrchestrator", "ConversationService", "TurnResult", "TurnState"]
