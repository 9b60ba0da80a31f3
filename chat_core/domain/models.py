"""统一的对话设置与生成请求/结果模型。

本模块定义了编排层与生成后端之间共享的标准数据结构：

- ChatSettings: 用户可配置的对话参数，每一轮对话开始时取一次快照。
- GenerateRequest: 发给生成后端的完整请求（prompt + system + options）。
- GenerateResult: 非流式调用的完整响应。
- ModelInfo: 后端可用模型信息（/api/tags）。

所有后端适配器（如 OllamaClient）都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Literal, Optional


Theme = Literal["light", "dark", "system"]

# 持久化记录使用的键名（与会话记录一样是 camelCase）
_STORED_KEYS = {
    "backend_url": "ollamaUrl",
    "model": "selectedModel",
    "temperature": "temperature",
    "max_output_tokens": "maxTokens",
    "system_prompt": "systemPrompt",
    "streaming_enabled": "streamResponse",
    "auto_save": "autoSave",
    "theme": "theme",
}
_FIELD_NAMES = {stored: name for name, stored in _STORED_KEYS.items()}


@dataclass(frozen=True)
class ChatSettings:
    """对话参数快照。

    frozen：一轮对话开始后，设置页的修改不会影响已经发出的请求。
    auto_save/theme 仅为展示层字段，核心逻辑不读取，但会随设置一起持久化。
    """

    backend_url: str = "http://localhost:11434"
    model: str = ""
    temperature: float = 0.7
    max_output_tokens: int = 2048
    system_prompt: str = ""
    streaming_enabled: bool = False
    auto_save: bool = True
    theme: Theme = "system"

    def to_dict(self) -> Dict[str, Any]:
        """转成持久化记录（camelCase 键名）。"""

        return {_STORED_KEYS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["ChatSettings"] = None) -> "ChatSettings":
        """把扁平记录合并到 base（默认值）之上。

        camelCase 存储键名与字段名都接受，未知字段忽略。
        """

        merged = asdict(base or cls())
        known = {f.name for f in fields(cls)}
        for key, value in (data or {}).items():
            name = _FIELD_NAMES.get(key, key)
            if name in known and value is not None:
                merged[name] = value
        return cls(**merged)

    def with_updates(self, **updates: Any) -> "ChatSettings":
        return ChatSettings.from_dict(updates, base=self)

    @property
    def is_configured(self) -> bool:
        return bool(self.backend_url and self.model)


@dataclass
class GenerateOptions:
    """Ollama options 字段：temperature / num_predict。"""

    temperature: float = 0.7
    num_predict: int = 2048


@dataclass
class GenerateRequest:
    """一次生成请求。

    由 ChatOrchestrator 基于 ChatSettings 快照构造，
    后端适配层负责把本结构转换成具体 API 的 JSON 请求体。
    """

    model: str
    prompt: str
    system: str = ""
    options: GenerateOptions = field(default_factory=GenerateOptions)
    # 不进入请求体，只决定发往哪个后端地址
    backend_url: Optional[str] = None

    @classmethod
    def from_settings(cls, prompt: str, snapshot: ChatSettings) -> "GenerateRequest":
        return cls(
            model=snapshot.model,
            prompt=prompt,
            system=snapshot.system_prompt,
            options=GenerateOptions(
                temperature=snapshot.temperature,
                num_predict=snapshot.max_output_tokens,
            ),
            backend_url=snapshot.backend_url,
        )

    def to_payload(self, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "prompt": self.prompt,
            "system": self.system,
            "stream": stream,
            "options": asdict(self.options),
        }


@dataclass
class GenerateResult:
    """非流式调用的最终结果。

    - response: 完整回复文本。
    - done: 后端是否标记生成结束。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    response: str
    done: bool = True
    raw: Optional[dict] = None


@dataclass
class ModelInfo:
    """后端模型列表中的单项。"""

    name: str
    size: int = 0
    digest: str = ""
    modified_at: str = ""
