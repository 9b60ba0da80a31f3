"""键值存储介质实现。

ConversationRepository 只依赖 KeyValueStore 协议（get / set / remove，整体读写），
这里提供两种实现：

- JsonFileKeyValueStore: 每个 key 一个文件，写入走“临时文件 + os.replace”，
  避免写到一半的文件被读到。
- MemoryKeyValueStore: 进程内字典，可设置容量上限模拟配额不足，主要用于测试。
"""

import asyncio
import os
import re
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import PersistenceError


_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileKeyValueStore:
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self._root / f"{_SAFE_KEY.sub('_', key)}.json"

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    def _read(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e), key=key)

    def _write(self, key: str, value: str) -> None:
        path = self.path_for(key)
        tmp_path = self._root / f"{path.stem}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def _remove(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e), key=key)


class MemoryKeyValueStore:
    """内存实现。quota_bytes 为所有 value 的总长度上限（按 UTF-8 字节计）。"""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            others = sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
            if others + len(value.encode("utf-8")) > self.quota_bytes:
                raise PersistenceError(code="QUOTA_EXCEEDED", message="storage quota exceeded", key=key)
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
