"""单轮生成的流式缓冲与取消信号。"""

import asyncio
from dataclasses import dataclass


class StreamAccumulator:
    """把一轮流式生成的分片按到达顺序拼成一个字符串。

    只追加、不做任何规范化（空白、编码），最终内容与收到的分片拼接结果逐字节一致。
    """

    def __init__(self) -> None:
        self._text = ""
        self._chunks = 0

    def append(self, chunk: str) -> str:
        self._text += chunk
        self._chunks += 1
        return self._text

    def reset(self) -> None:
        self._text = ""
        self._chunks = 0

    @property
    def text(self) -> str:
        return self._text

    @property
    def chunk_count(self) -> int:
        return self._chunks


@dataclass(frozen=True)
class StreamingState:
    """正在流式生成的助手消息的瞬时内容，不落盘。"""

    conversation_id: str
    message_id: str
    content: str = ""


class CancellationToken:
    """协作式取消信号，每轮对话一个。

    signal_cancel() 只置位；生成方在分片边界检查 is_cancelled，
    或 await wait() 与正在进行的读取竞争。
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def signal_cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
