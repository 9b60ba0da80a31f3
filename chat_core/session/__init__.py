"""Session-level chat engine (context, conversations, orchestrator)."""

from .context import AppContext
from .conversations import ConversationService
from .orchestrator import ChatOrchestrator, TurnResult, TurnState
from .streaming import CancellationToken, StreamAccumulator, StreamingState
from .title import derive_title

__all__ = [
    "AppContext",
    "CancellationToken",
    "ChatOrchestrator",
    "ConversationService",
    "StreamAccumulator",
    "StreamingState",
    "TurnResult",
    "TurnState",
    "derive_title",
]
