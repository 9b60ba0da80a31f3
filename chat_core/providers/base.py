"""生成后端抽象接口。

上层 ChatOrchestrator 不直接依赖具体后端的 HTTP 细节，而是依赖此协议：

- 每种后端实现一个 GenerationClient（如 OllamaClient）。
- 负责：将 GenerateRequest 转成具体 API 请求，并把响应解析为统一模型。

token 为本轮对话的 CancellationToken；实现方应在每个分片边界检查它，
被取消后停止产出分片。
"""

from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Protocol

from chat_core.domain.models import GenerateRequest, GenerateResult, ModelInfo

if TYPE_CHECKING:
    from chat_core.session.streaming import CancellationToken


class GenerationClient(Protocol):
    """生成后端客户端协议。

    实现者需要提供：
    - name: 后端名称，用于日志。
    - generate(req): 非流式调用，返回完整结果。
    - generate_stream(req): 流式调用，按到达顺序逐个产出文本分片。
    """

    name: str

    async def generate(
        self, req: GenerateRequest, token: Optional["CancellationToken"] = None
    ) -> GenerateResult:
        ...

    def generate_stream(
        self, req: GenerateRequest, token: Optional["CancellationToken"] = None
    ) -> AsyncIterator[str]:
        ...

    async def list_models(self) -> List[ModelInfo]:
        ...
