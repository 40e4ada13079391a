import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from tutor_core.config.settings import settings
from tutor_core.domain.conversation import KeyValueStore
from tutor_core.domain.exceptions import BusinessError


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonKeyValueStore(KeyValueStore):
    """每个 key 对应 root/kv 下的一个 JSON 文件，写入通过临时文件 + os.replace 保证原子性。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._kv_root = self._root / "kv"
        self._kv_root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def put(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self._kv_root.glob("*.json"))

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key or ""):
            raise BusinessError(code="STORE_INVALID_KEY", message=f"Invalid storage key: {key!r}")
        return self._kv_root / f"{key}.json"


class MemoryKeyValueStore(KeyValueStore):
    """进程内存实现，主要用于测试与无持久化场景。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)
