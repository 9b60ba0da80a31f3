"""生成后端集成层。

该包下的模块负责：
- 定义后端抽象接口 (base)。
- 提供具体实现 (ollama_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import GenerationClient
from chat_core.providers.ollama_client import OllamaClient


def create_client(name: Optional[str] = None, base_url: Optional[str] = None) -> GenerationClient:
    """根据名称创建后端客户端，目前只有 ollama。"""

    client_name = (name or "ollama").lower()
    if client_name != "ollama":
        raise ValueError(f"Unknown generation backend: {name!r}")
    return OllamaClient(settings, base_url=base_url)

