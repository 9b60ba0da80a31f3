"""对话编排核心模块。

一轮对话（turn）的状态机：

    IDLE → USER_APPENDED → PLACEHOLDER_CREATED → GENERATING → FINALIZING → IDLE
                                                  ├→ CANCELLED
                                                  └→ FAILED

每一步的仓库写入严格按顺序发生：用户消息、助手占位消息、最终内容、（可选）标题。
助手消息只按 id 定位，从不按位置或“最后一条”定位。
流式分片只更新 AppContext.streaming，不逐片写仓库。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, Tuple
from uuid import uuid4

from chat_core.domain.exceptions import BackendError, BusinessError, ValidationError
from chat_core.domain.models import ChatSettings, GenerateRequest
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import GenerationClient
from chat_core.session.context import AppContext
from chat_core.session.conversations import ConversationService
from chat_core.session.streaming import CancellationToken, StreamAccumulator, StreamingState


# 生成失败时写入助手消息的固定文案
ERROR_REPLY = "响应过程中出现错误，请重试。"


class TurnState(str, Enum):
    IDLE = "idle"
    USER_APPENDED = "user_appended"
    PLACEHOLDER_CREATED = "placeholder_created"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnResult:
    """一轮对话的结果。

    state 为 IDLE 表示成功完成；CANCELLED / FAILED 为对应的终止状态。
    """

    state: TurnState
    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    content: str = ""
    title: Optional[str] = None
    error: Optional[str] = None


class _Cancelled(Exception):
    """内部信号：本轮在等待后端期间被取消。"""


async def _next_chunk(stream: AsyncIterator[str]) -> Tuple[bool, str]:
    try:
        return True, await anext(stream)
    except StopAsyncIteration:
        return False, ""


class ChatOrchestrator:
    def __init__(
        self,
        context: AppContext,
        client: GenerationClient,
        conversations: Optional[ConversationService] = None,
    ):
        self._context = context
        self._client = client
        self._conversations = conversations or ConversationService(context)
        self._state = TurnState.IDLE
        self._token: Optional[CancellationToken] = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_generating(self) -> bool:
        """是否有一轮对话仍持有取消令牌。"""

        return self._token is not None

    @property
    def streaming_state(self) -> Optional[StreamingState]:
        return self._context.streaming

    @property
    def conversations(self) -> ConversationService:
        return self._conversations

    async def send_message(self, text: str) -> TurnResult:
        """发送一条用户消息并完成一轮对话。

        Args:
            text: 用户输入，不能为空或纯空白。

        Returns:
            TurnResult，state 为 IDLE（成功）、CANCELLED 或 FAILED。

        Raises:
            ValidationError: 空消息，或上一轮尚未结束；不会产生任何写入。
            BusinessError: 写入失败（已写入 last_error）。
        """

        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="消息不能为空")
        if self._token is not None:
            raise ValidationError(code="TURN_IN_PROGRESS", message="正在生成回复，请稍候")

        # 在第一个 await 之前占住本轮
        token = CancellationToken()
        self._token = token
        self._state = TurnState.IDLE
        snapshot: ChatSettings = self._context.settings
        start_time = time.time()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "model": snapshot.model}

        ctx = self._context
        ctx.set_error(None)
        ctx.set_loading(True)
        try:
            conversation_id = ctx.current_conversation_id
            if conversation_id is None:
                conversation_id = (await self._conversations.create_conversation()).id
            log_ctx["conversation_id"] = conversation_id

            user_msg = await self._conversations.add_message(conversation_id, text, "user")
            self._advance(token, TurnState.USER_APPENDED)
            self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_msg.id)

            placeholder = await self._conversations.add_message(conversation_id, "", "assistant")
            self._advance(token, TurnState.PLACEHOLDER_CREATED)
            log_ctx["assistant_message_id"] = placeholder.id

            result = TurnResult(
                state=TurnState.GENERATING,
                conversation_id=conversation_id,
                user_message_id=user_msg.id,
                assistant_message_id=placeholder.id,
            )
            await self._run_generation(text, snapshot, token, result, log_ctx)
        except BusinessError as e:
            if self._state in (TurnState.GENERATING, TurnState.FINALIZING):
                self._state = TurnState.FAILED
            elif not token.is_cancelled:
                self._state = TurnState.IDLE
            self._log(logging.ERROR, "Turn aborted", log_ctx, code=e.code, error=e.message)
            raise
        except asyncio.CancelledError:
            # 外层任务被取消，按用户取消处理
            token.signal_cancel()
            self._state = TurnState.CANCELLED
            raise
        except Exception:
            self._state = TurnState.FAILED
            raise
        finally:
            ctx.streaming = None
            if self._token is token:
                self._token = None
            ctx.set_loading(False)

        self._log(
            logging.INFO,
            "Completed turn",
            log_ctx,
            state=result.state.value,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        if result.state is TurnState.IDLE:
            result.title = await self._maybe_generate_title(conversation_id, log_ctx)
        return result

    def cancel_generation(self) -> bool:
        """取消当前这一轮。

        状态同步切到 CANCELLED；后端连接的关闭是尽力而为，之后到达的分片一律丢弃。
        收尾阶段（FINALIZING）、已失败正在写入错误回复（FAILED）或没有进行中的一轮时返回 False。
        """

        token = self._token
        if token is None or token.is_cancelled or self._state in (TurnState.FINALIZING, TurnState.FAILED):
            return False
        token.signal_cancel()
        self._state = TurnState.CANCELLED
        self._context.streaming = None
        self._context.set_loading(False)
        log_event(logging.INFO, "Generation cancelled", {}, conversation_id=self._context.current_conversation_id)
        return True

    async def _run_generation(
        self,
        prompt: str,
        snapshot: ChatSettings,
        token: CancellationToken,
        result: TurnResult,
        log_ctx: Dict[str, Any],
    ) -> None:
        if token.is_cancelled:
            result.state = TurnState.CANCELLED
            self._log(logging.INFO, "Turn cancelled before generation", log_ctx)
            return
        self._state = TurnState.GENERATING
        request = GenerateRequest.from_settings(prompt, snapshot)
        self._log(
            logging.INFO,
            "Calling backend (stream)" if snapshot.streaming_enabled else "Calling backend",
            log_ctx,
            backend=self._client.name,
        )

        try:
            if snapshot.streaming_enabled:
                content = await self._collect_stream(request, token, result)
            else:
                generated = await self._until_cancelled(self._client.generate(request, token), token)
                content = generated.response
        except _Cancelled:
            result.state = TurnState.CANCELLED
            self._log(logging.INFO, "Turn cancelled", log_ctx)
            return
        except BackendError as e:
            if token.is_cancelled:
                result.state = TurnState.CANCELLED
                return
            await self._fail(result, e, log_ctx)
            return

        if token.is_cancelled:
            result.state = TurnState.CANCELLED
            return
        self._state = TurnState.FINALIZING
        self._context.streaming = None
        await self._conversations.update_message(result.conversation_id, result.assistant_message_id, content)
        result.content = content
        result.state = TurnState.IDLE
        self._state = TurnState.IDLE
        self._log(logging.INFO, "Stored assistant message", log_ctx, content_length=len(content))

    async def _collect_stream(
        self, request: GenerateRequest, token: CancellationToken, result: TurnResult
    ) -> str:
        accumulator = StreamAccumulator()
        ctx = self._context
        ctx.set_streaming(StreamingState(result.conversation_id, result.assistant_message_id, ""))
        stream: AsyncIterator[str] = self._client.generate_stream(request, token)
        try:
            while True:
                has_more, chunk = await self._until_cancelled(_next_chunk(stream), token)
                if not has_more:
                    break
                total = accumulator.append(chunk)
                ctx.set_streaming(StreamingState(result.conversation_id, result.assistant_message_id, total))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return accumulator.text

    @staticmethod
    async def _until_cancelled(aw: Awaitable[Any], token: CancellationToken) -> Any:
        """等待 aw 完成；token 先被取消时放弃 aw 并抛出 _Cancelled。"""

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if token.is_cancelled:
            # 已经到达的结果或异常一并丢弃
            await asyncio.gather(task, return_exceptions=True)
            raise _Cancelled()
        return task.result()

    async def _fail(self, result: TurnResult, error: BackendError, log_ctx: Dict[str, Any]) -> None:
        self._state = TurnState.FAILED
        result.state = TurnState.FAILED
        result.error = error.message
        self._context.streaming = None
        self._log(logging.ERROR, "Backend call failed", log_ctx, code=error.code, error=error.message)
        try:
            await self._conversations.update_message(
                result.conversation_id, result.assistant_message_id, ERROR_REPLY
            )
            result.content = ERROR_REPLY
        except BusinessError as e:
            self._log(logging.ERROR, "Failed to store error reply", log_ctx, code=e.code, error=e.message)
        self._context.set_error(error.message or "发送消息失败")

    async def _maybe_generate_title(self, conversation_id: str, log_ctx: Dict[str, Any]) -> Optional[str]:
        try:
            return await self._conversations.store_derived_title(conversation_id)
        except BusinessError as e:
            # 只记日志，不回滚本轮，也不提示用户
            self._log(logging.WARNING, "Failed to generate conversation title", log_ctx, error=e.message)
            return None

    def _advance(self, token: CancellationToken, state: TurnState) -> None:
        if not token.is_cancelled:
            self._state = state

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        log_event(level, message, log_ctx, **fields)
