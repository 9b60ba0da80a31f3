"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载进程级配置。

注意区分两类配置：
- 这里的 AppConfig 描述“进程怎么跑”：存储目录、日志、HTTP 超时、默认后端等。
- 用户在设置界面里可改的对话参数（模型、温度、系统提示词等）属于
  domain.models.ChatSettings，由 SettingsRepository 持久化。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class AppConfig(BaseSettings):
    """进程级配置（使用 Pydantic）。"""

    # ---- 后端默认值（首次启动、用户尚未保存设置时使用） ----
    default_backend_url: str = Field(
        default="http://localhost:11434",
        description="Ollama 服务地址",
    )
    default_model: str = Field(default="deepseek-r1:8b", description="默认模型名")
    default_system_prompt: Optional[str] = Field(
        default=None,
        description="默认系统提示词，为空时读取 prompts/zh/default_system.md",
    )

    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    title_max_length: int = Field(default=30, ge=4, le=200, description="自动标题最大长度")

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("default_backend_url")
    @classmethod
    def validate_backend_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("backend url must start with http:// or https://")
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = AppConfig()
