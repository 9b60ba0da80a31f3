"""Ollama 后端适配器。

本模块负责：

1. 接收统一的 GenerateRequest。
2. 将其转换为 Ollama /api/generate 的请求体。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应解析为 GenerateResult，或在流式模式下逐行解析 NDJSON 并产出文本分片。

流式响应格式：每行一个 JSON 对象 {"response": "...", "done": false}，
最后一行 done=true，之后不再有分片。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, TYPE_CHECKING

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError
from chat_core.domain.models import GenerateRequest, GenerateResult, ModelInfo
from chat_core.infrastructure.logging.logger import logger

if TYPE_CHECKING:
    from chat_core.session.streaming import CancellationToken


class OllamaClient:
    """Ollama 客户端实现。

    - name: 后端名称（供日志/调试使用）。
    - base_url: 默认后端地址；GenerateRequest.backend_url 优先。
    """

    name = "ollama"

    def __init__(self, cfg=settings, base_url: Optional[str] = None):
        self._settings = cfg
        self.base_url = (base_url or getattr(cfg, "default_backend_url", None) or "http://localhost:11434").rstrip("/")

    def set_base_url(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    async def generate(
        self, req: GenerateRequest, token: Optional["CancellationToken"] = None
    ) -> GenerateResult:
        """执行一次非流式生成调用。"""

        payload = req.to_payload(stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(f"{self._base(req)}/api/generate", json=payload)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="BAD_RESPONSE", message=f"invalid JSON from backend: {e}")
        if data.get("error"):
            raise ApiError(code="API_ERROR", message=str(data["error"]))
        return GenerateResult(response=data.get("response") or "", done=bool(data.get("done", True)), raw=data)

    async def generate_stream(
        self, req: GenerateRequest, token: Optional["CancellationToken"] = None
    ) -> AsyncIterator[str]:
        """执行一次流式生成调用，按到达顺序 yield 文本分片。

        token 被取消后立即停止读取；已经在网络上的数据直接丢弃。
        """

        payload = req.to_payload(stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", f"{self._base(req)}/api/generate", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        self._raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"))
                    async for line in resp.aiter_lines():
                        if token is not None and token.is_cancelled:
                            return
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            logger.warning("Skipped malformed stream line", extra={"extra": {"line": line[:200]}})
                            continue
                        if data.get("error"):
                            raise ApiError(code="API_ERROR", message=str(data["error"]))
                        text = data.get("response") or ""
                        if text:
                            yield text
                        if data.get("done"):
                            return
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    async def list_models(self) -> List[ModelInfo]:
        """读取后端可用模型列表（/api/tags）。"""

        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp.status_code, resp.text)
        data: Dict[str, Any] = resp.json()
        return [
            ModelInfo(
                name=m.get("name") or "",
                size=int(m.get("size") or 0),
                digest=m.get("digest") or "",
                modified_at=m.get("modified_at") or "",
            )
            for m in data.get("models", [])
        ]

    def _base(self, req: GenerateRequest) -> str:
        return (req.backend_url or self.base_url).rstrip("/")

    @staticmethod
    def _raise_for_status(status_code: int, text: str) -> None:
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Ollama rate limit", http_status=429)
        if status_code >= 400:
            raise ApiError(code="API_ERROR", message=text, http_status=status_code)
