"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取默认系统提示词，
用户未在设置里填写 system_prompt 时作为初始值。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_default_system_prompt(locale: str = "zh") -> str:
    """加载默认系统提示词文本（去掉末尾换行）。"""

    fname = PROMPTS_DIR / locale / "default_system.md"
    return fname.read_text(encoding="utf-8").strip()
