"""MemorySystem：有界的消息日志、聊天记录与会话元数据。

- 消息日志与聊天记录各自有上限，超过上限时只保留最近的 keep 条；
- 每个组件独立序列化到键值存储，单个组件损坏或过大只影响它自己；
- 总配额按组件分摊（默认每个组件不超过 25%），序列化前先截断最旧的条目。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from tutor_core.config.settings import settings
from tutor_core.domain.conversation import (
    ConversationTurn,
    KeyValueStore,
    Session,
    SessionType,
    StoredMessage,
)
from tutor_core.domain.exceptions import BusinessError
from tutor_core.infrastructure.logging.logger import logger


STORAGE_KEYS = {
    "messages": "tutor_messages",
    "chat": "tutor_chat",
    "summary": "tutor_summary",
    "diagram": "tutor_diagram",
    "session": "tutor_session",
    "metadata": "tutor_metadata",
}

# 组件超出配额时首先截断到的条数
_OVERSIZE_KEEP = {"messages": 100, "chat": 50}


@dataclass
class StorageStatus:
    current_size: int
    max_size: int
    usage_percentage: float
    components: Dict[str, int]


def truncate_log(entries: List[Any], max_entries: int, keep: int) -> List[Any]:
    """超过 max_entries 时保留最近 keep 条，否则原样返回（对已截断的日志是空操作）。"""

    if len(entries) > max_entries:
        return entries[-keep:]
    return entries


class MemorySystem:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_messages: Optional[int] = None,
        keep_messages: Optional[int] = None,
        max_chat: Optional[int] = None,
        keep_chat: Optional[int] = None,
        quota_bytes: Optional[int] = None,
        component_share: Optional[float] = None,
        session_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._max_messages = max_messages or settings.memory_max_messages
        self._keep_messages = min(keep_messages or settings.memory_keep_messages, self._max_messages)
        self._max_chat = max_chat or settings.memory_max_chat
        self._keep_chat = min(keep_chat or settings.memory_keep_chat, self._max_chat)
        self._quota = quota_bytes or settings.memory_quota_bytes
        self._share = component_share or settings.memory_component_share
        self._session_timeout = session_timeout if session_timeout is not None else settings.session_timeout
        self._clock = clock

        self._messages: List[StoredMessage] = []
        self._chat: List[ConversationTurn] = []
        self._summary: Optional[Dict[str, Any]] = None
        self._diagram: Optional[Dict[str, Any]] = None
        self._session: Optional[Session] = None
        self._sizes: Dict[str, int] = {}

    # ---- 日志 ----

    @property
    def messages(self) -> List[StoredMessage]:
        return list(self._messages)

    @property
    def chat_history(self) -> List[ConversationTurn]:
        return list(self._chat)

    @property
    def component_limit(self) -> int:
        return int(self._quota * self._share)

    def add_message(self, role: str, content: str, meta: Optional[Dict[str, Any]] = None) -> StoredMessage:
        message = StoredMessage(
            id=f"m-{uuid4().hex}",
            role=role,
            content=content,
            timestamp=self._clock(),
            meta=dict(meta or {}),
        )
        self._messages.append(message)
        before = len(self._messages)
        self._messages = truncate_log(self._messages, self._max_messages, self._keep_messages)
        if len(self._messages) != before:
            logger.info("Truncated message log", extra={"extra": {"kept": len(self._messages), "dropped": before - len(self._messages)}})
        return message

    def add_chat_turn(self, turn: ConversationTurn) -> None:
        self._chat.append(turn)
        before = len(self._chat)
        self._chat = truncate_log(self._chat, self._max_chat, self._keep_chat)
        if len(self._chat) != before:
            logger.info("Truncated chat history", extra={"extra": {"kept": len(self._chat), "dropped": before - len(self._chat)}})

    def append_turn(
        self,
        user_text: str,
        bot_text: str,
        related_tools: Optional[List[str]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ConversationTurn, ConversationTurn]:
        """持久化一问一答：同时写入聊天记录与消息日志。"""

        tools = list(related_tools or [])
        now = self._clock()
        user_turn = ConversationTurn(id=f"t-{uuid4().hex}", role="user", content=user_text, timestamp=now)
        bot_turn = ConversationTurn(
            id=f"t-{uuid4().hex}",
            role="bot",
            content=bot_text,
            timestamp=self._clock(),
            related_tools=tools,
        )
        self.add_chat_turn(user_turn)
        self.add_chat_turn(bot_turn)
        self.add_message("user", user_text, meta)
        self.add_message("assistant", bot_text, {**(meta or {}), "related_tools": tools})
        return user_turn, bot_turn

    def recent_chat(self, limit: int) -> List[ConversationTurn]:
        if limit <= 0:
            return []
        return self._chat[-limit:]

    def recent_messages(self, limit: int) -> List[StoredMessage]:
        if limit <= 0:
            return []
        return self._messages[-limit:]

    # ---- 摘要与图表状态 ----

    @property
    def summary_context(self) -> Optional[Dict[str, Any]]:
        return self._summary

    def set_summary_context(self, summary: Optional[Dict[str, Any]]) -> None:
        self._summary = dict(summary) if summary else None

    @property
    def diagram_state(self) -> Optional[Dict[str, Any]]:
        return self._diagram

    def set_diagram_state(self, state: Optional[Dict[str, Any]]) -> None:
        self._diagram = dict(state) if state else None

    # ---- 会话 ----

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    def start_session(self, session_type: SessionType = "study") -> Session:
        if self._session is not None and self._session.active:
            self.end_session()
        self._session = Session(id=f"s-{uuid4().hex}", start_time=self._clock(), type=session_type)
        logger.info("Session started", extra={"extra": {"session_id": self._session.id, "type": session_type}})
        return self._session

    def end_session(self) -> Optional[Session]:
        session = self._session
        if session is None or not session.active:
            return session
        session.end_time = self._clock()
        logger.info("Session ended", extra={"extra": {"session_id": session.id}})
        return session

    def ensure_session(self, session_type: SessionType = "study") -> Session:
        """返回活动会话；会话不存在、已结束或已超时时开启新会话。"""

        session = self._session
        if session is not None and session.active and self._session_timeout:
            if self._clock() - session.start_time > timedelta(seconds=self._session_timeout):
                self.end_session()
        if self._session is None or not self._session.active:
            return self.start_session(session_type)
        return self._session

    # ---- 持久化 ----

    def save_to_storage(self) -> Dict[str, bool]:
        """逐个组件写入存储，返回每个组件是否写入成功。"""

        results: Dict[str, bool] = {}
        self._messages = self._fit("messages", self._messages, lambda m: m.to_dict())
        self._chat = self._fit("chat", self._chat, lambda t: t.to_dict())
        components = {
            "messages": [m.to_dict() for m in self._messages],
            "chat": [t.to_dict() for t in self._chat],
            "summary": self._summary,
            "diagram": self._diagram,
            "session": self._session.to_dict() if self._session else None,
        }
        for name, value in components.items():
            results[name] = self._save_component(name, value)
        metadata = {
            "size": sum(self._sizes.values()),
            "last_updated": self._clock().isoformat(),
            "components": dict(self._sizes),
        }
        results["metadata"] = self._save_component("metadata", metadata)
        return results

    def load_from_storage(self) -> Dict[str, bool]:
        """逐个组件恢复；单个组件解析失败时使用默认值，不影响其他组件。"""

        results: Dict[str, bool] = {}
        messages = self._load_component("messages", lambda raw: [StoredMessage.from_dict(m) for m in raw], [])
        results["messages"] = messages is not None
        self._messages = truncate_log(messages or [], self._max_messages, self._keep_messages)

        chat = self._load_component("chat", lambda raw: [ConversationTurn.from_dict(t) for t in raw], [])
        results["chat"] = chat is not None
        self._chat = truncate_log(chat or [], self._max_chat, self._keep_chat)

        summary = self._load_component("summary", _as_mapping, None)
        results["summary"] = summary is not None or self._store.get(STORAGE_KEYS["summary"]) is None
        self._summary = summary

        diagram = self._load_component("diagram", _as_mapping, None)
        results["diagram"] = diagram is not None or self._store.get(STORAGE_KEYS["diagram"]) is None
        self._diagram = diagram

        session = self._load_component("session", lambda raw: Session.from_dict(raw) if raw else None, None)
        results["session"] = session is not None or self._store.get(STORAGE_KEYS["session"]) is None
        self._session = session

        logger.info(
            "Loaded memory from storage",
            extra={"extra": {"messages": len(self._messages), "chat": len(self._chat), "ok": results}},
        )
        return results

    def storage_status(self) -> StorageStatus:
        sizes: Dict[str, int] = {}
        for name, key in STORAGE_KEYS.items():
            raw = self._store.get(key)
            sizes[name] = len(raw.encode("utf-8")) if raw else 0
        current = sum(sizes.values())
        return StorageStatus(
            current_size=current,
            max_size=self._quota,
            usage_percentage=round(current / self._quota * 100, 2),
            components=sizes,
        )

    def clear_storage(self) -> None:
        for key in STORAGE_KEYS.values():
            self._store.remove(key)
        self._messages = []
        self._chat = []
        self._summary = None
        self._diagram = None
        self._session = None
        self._sizes = {}
        logger.info("Cleared memory storage")

    def _fit(self, name: str, entries: List[Any], encode: Callable[[Any], Dict[str, Any]]) -> List[Any]:
        """截断最旧条目直到该组件的序列化体积不超过单组件配额。"""

        limit = self.component_limit
        if _encoded_size([encode(e) for e in entries]) <= limit:
            return entries
        trimmed = entries[-_OVERSIZE_KEEP[name]:]
        while trimmed and _encoded_size([encode(e) for e in trimmed]) > limit:
            trimmed = trimmed[len(trimmed) // 2 + len(trimmed) % 2:] if len(trimmed) > 1 else []
        logger.warning(
            "Component exceeded storage quota, truncated",
            extra={"extra": {"component": name, "kept": len(trimmed), "dropped": len(entries) - len(trimmed)}},
        )
        return trimmed

    def _save_component(self, name: str, value: Any) -> bool:
        key = STORAGE_KEYS[name]
        try:
            if value is None:
                self._store.remove(key)
                self._sizes[name] = 0
                return True
            payload = json.dumps(value, ensure_ascii=False)
            size = len(payload.encode("utf-8"))
            if size > self.component_limit:
                logger.warning(
                    "Component too large to store, skipped",
                    extra={"extra": {"component": name, "size": size, "limit": self.component_limit}},
                )
                return False
            self._store.put(key, payload)
            self._sizes[name] = size
            return True
        except BusinessError as exc:
            logger.log(logging.ERROR, "Failed to save component", extra={"extra": {"component": name, "error": exc.message}})
            return False

    def _load_component(self, name: str, decode: Callable[[Any], Any], default: Any) -> Any:
        key = STORAGE_KEYS[name]
        try:
            raw = self._store.get(key)
            if raw is None:
                return default
            return decode(json.loads(raw))
        except (BusinessError, ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning(
                "Failed to load component, using default",
                extra={"extra": {"component": name, "error": str(exc)}},
            )
            return None


def _encoded_size(value: Any) -> int:
    return len(json.dumps(value, ensure_ascii=False).encode("utf-8"))


def _as_mapping(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise TypeError("expected a JSON object")
    return raw
