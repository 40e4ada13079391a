"""进程内事件总线。

Orchestrator 的生命周期事件与 ToolExecutor 的执行埋点都经由这里发布，
UI / 桥接层通过 subscribe 订阅。处理函数可以是普通函数，也可以是协程函数；
单个订阅者抛出的异常只记录日志，不影响其他订阅者和发布方。
"""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from tutor_core.infrastructure.logging.logger import logger


class EventType(str, Enum):
    QUERY_RECEIVED = "query.received"
    QUERY_PROCESSED = "query.processed"
    VOICE_COMPLETED = "voice.completed"
    SYSTEM_STATE_CHANGED = "system.state_changed"
    SYSTEM_ERROR = "system.error"
    SYSTEM_RESET = "system.reset"
    TOOL_EXECUTED = "tool.executed"
    TOOL_FAILED = "tool.failed"


@dataclass
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    query_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> Callable[[], None]:
        """注册处理函数，返回取消订阅的回调。"""

        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, ()))

    async def publish(
        self,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        query_id: Optional[str] = None,
    ) -> Event:
        event = Event(type=event_type, payload=dict(payload or {}), query_id=query_id)
        for handler in list(self._handlers.get(event_type, ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.log(
                    logging.ERROR,
                    "Event handler failed",
                    exc_info=True,
                    extra={"extra": {"event": event_type.value, "query_id": query_id}},
                )
        return event
