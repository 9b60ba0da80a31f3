import re

from chat_core.domain.conversation import DEFAULT_TITLE

_WHITESPACE = re.compile(r"\s+")

ELLIPSIS = "..."


def derive_title(text: str, max_length: int = 30) -> str:
    """由首条用户消息生成会话标题。

    连续空白折叠为单个空格，超过 max_length 个字符时截断并追加 "..."；
    结果为空时返回默认标题。纯函数，相同输入总是得到相同输出。
    """

    normalized = _WHITESPACE.sub(" ", text or "").strip()
    if not normalized:
        return DEFAULT_TITLE
    if len(normalized) <= max_length:
        return normalized
    return normalized[:max_length].rstrip() + ELLIPSIS
