"""Orchestrator：查询处理的顶层状态机。

状态 Idle -> Processing -> (Idle | Error)，同一时刻最多一个查询处于 Processing，
并发的第二个查询立即收到忙碌提示而不是排队。每个查询拿到独立的 query_id，
语音收敛结果通过 query_id 取回，因此 process_query 返回时立即释放忙碌标记。
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import ConfigurationError, SystemNotReadyError
from tutor_core.flows.graph import QueryPipeline, build_query_graph
from tutor_core.flows.state import QueryState
from tutor_core.infrastructure.events.bus import EventBus, EventType
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.language.interface import LanguageInterface
from tutor_core.memory.system import MemorySystem
from tutor_core.tools import default_tools
from tutor_core.tools.definitions import Tool
from tutor_core.tools.executor import ToolExecutor
from tutor_core.tools.router import ToolRouter


NOT_READY_RESPONSE = "System not initialized or disabled"
BUSY_RESPONSE = "System busy, please wait..."

MOCK_SUMMARY: Dict[str, Any] = {
    "title": "AI & Machine Learning Lecture Summary",
    "content": (
        "This lecture covered fundamental concepts in artificial intelligence and machine learning. "
        "Key topics included neural networks, deep learning architectures, supervised and unsupervised "
        "learning, and practical applications in computer vision and natural language processing. "
        "The instructor demonstrated how backpropagation works in neural networks and discussed the "
        "importance of data preprocessing and feature engineering."
    ),
    "key_points": [
        "Neural networks and deep learning fundamentals",
        "Supervised vs unsupervised learning approaches",
        "Backpropagation algorithm and gradient descent",
        "Computer vision and NLP applications",
        "Industry applications and case studies",
    ],
    "mock_data": True,
}


class SystemState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class OrchestratorConfig:
    context_messages: int = 10
    max_length: int = 300
    educational_focus: bool = True
    voice_completion_timeout: float = 15.0
    test_mode: bool = False

    @classmethod
    def from_settings(cls) -> "OrchestratorConfig":
        return cls(
            context_messages=settings.conversation_context_messages,
            max_length=settings.response_max_length,
            voice_completion_timeout=settings.voice_completion_timeout,
            test_mode=settings.enable_test_mode,
        )


class Orchestrator:
    def __init__(
        self,
        language: LanguageInterface,
        memory: MemorySystem,
        executor: Optional[ToolExecutor] = None,
        router: Optional[ToolRouter] = None,
        events: Optional[EventBus] = None,
        config: Optional[OrchestratorConfig] = None,
        tools: Optional[Iterable[Tool]] = None,
    ):
        self._language = language
        self._memory = memory
        self._events = events or EventBus()
        self._executor = executor or ToolExecutor(events=self._events)
        if router is None:
            router = ToolRouter(language, tools if tools is not None else default_tools(language))
        self._router = router
        self._config = config or OrchestratorConfig.from_settings()
        self._graph = build_query_graph(
            QueryPipeline(
                executor=self._executor,
                language=self._language,
                memory=self._memory,
                events=self._events,
                voice_timeout=self._config.voice_completion_timeout,
            )
        )

        self._initialized = False
        self._enabled = True
        self._processing = False
        self._state = SystemState.IDLE
        self._last_query: Optional[Dict[str, Any]] = None

    # ---- 属性 ----

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def router(self) -> ToolRouter:
        return self._router

    @property
    def memory(self) -> MemorySystem:
        return self._memory

    @property
    def state(self) -> SystemState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ---- 生命周期 ----

    async def initialize(self) -> None:
        """启动检查与装配；没有任何可用 Provider 且禁用了离线兜底时抛出 ConfigurationError。"""

        if self._initialized:
            return
        providers = self._language.available_providers()
        if not providers and not self._language.offline_fallback:
            raise ConfigurationError(
                code="NO_PROVIDER",
                message="No language provider is configured and offline fallback is disabled",
            )
        if not providers:
            logger.warning("No language provider configured, answers will use offline fallback")

        self._memory.load_from_storage()
        session = self._memory.ensure_session()
        descriptor = self._router.descriptor()
        if self._executor.get(descriptor.name) is None:
            self._executor.register(descriptor)

        self._initialized = True
        logger.info(
            "Orchestrator initialized",
            extra={
                "extra": {
                    "providers": providers,
                    "tools": self._router.indexed_tools(),
                    "session_id": session.id,
                }
            },
        )
        await self._set_state(SystemState.IDLE, {})

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("Orchestrator enabled flag changed", extra={"extra": {"enabled": enabled}})

    def ensure_ready(self) -> None:
        if not self._initialized or not self._enabled:
            raise SystemNotReadyError(code="SYSTEM_NOT_READY", message=NOT_READY_RESPONSE)

    async def process_query(self, text: str) -> str:
        """处理一次用户查询并返回回答文本；本方法从不抛出异常。"""

        try:
            self.ensure_ready()
        except SystemNotReadyError as exc:
            logger.warning("Query rejected", extra={"extra": {"reason": exc.message}})
            return NOT_READY_RESPONSE
        if self._processing:
            logger.info("Query rejected while busy", extra={"extra": {"query": text[:50]}})
            return BUSY_RESPONSE

        # 在第一个 await 之前置位，保证同一时刻只有一个查询在途
        self._processing = True
        query_id = f"q-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {"query_id": query_id}
        self._last_query = None
        try:
            await self._set_state(SystemState.PROCESSING, log_ctx)
            await self._events.publish(EventType.QUERY_RECEIVED, {"query": text}, query_id=query_id)
            self._log(logging.INFO, "Processing query", log_ctx, query=text[:50])

            initial: QueryState = {
                "query_id": query_id,
                "query": text,
                "tool_args": self._tool_args(text, query_id),
            }
            final = await self._graph.ainvoke(initial)
            response = final.get("response") or ""
            self._last_query = {
                "query_id": query_id,
                "query": text,
                "response": response,
                "tool": final.get("tool_name"),
                "trigger": final.get("reconcile_trigger"),
            }
            self._log(
                logging.INFO,
                "Query processed",
                log_ctx,
                tool=final.get("tool_name"),
                success=final.get("success"),
                chars=len(response),
            )
            await self._set_state(SystemState.IDLE, log_ctx)
            return response
        except Exception as exc:
            logger.log(
                logging.ERROR,
                "Query processing failed",
                exc_info=True,
                extra={"extra": {**log_ctx, "error": str(exc)}},
            )
            await self._set_state(SystemState.ERROR, log_ctx)
            await self._events.publish(
                EventType.SYSTEM_ERROR,
                {"query": text, "error": str(exc)},
                query_id=query_id,
            )
            return f"Query processing failed: {exc}"
        finally:
            self._processing = False

    async def reset_system(self) -> None:
        self._memory.clear_storage()
        self._memory.start_session()
        await self._language.reset_session()
        self._processing = False
        self._last_query = None
        await self._set_state(SystemState.IDLE, {})
        await self._events.publish(EventType.SYSTEM_RESET, {})
        logger.info("System reset")

    async def shutdown(self) -> None:
        self._memory.end_session()
        self._memory.save_to_storage()
        await self._language.close()
        self._initialized = False
        logger.info("Orchestrator shut down")

    # ---- 查询上下文 ----

    def summary_context(self) -> Optional[Dict[str, Any]]:
        summary = self._memory.summary_context
        if summary:
            return summary
        if self._config.test_mode:
            return dict(MOCK_SUMMARY)
        return None

    def status(self) -> Dict[str, Any]:
        storage = self._memory.storage_status()
        session = self._memory.current_session
        return {
            "initialized": self._initialized,
            "enabled": self._enabled,
            "state": self._state.value,
            "processing": self._processing,
            "last_query": dict(self._last_query) if self._last_query else None,
            "tools": self._executor.stats(),
            "routable_tools": self._router.indexed_tools(),
            "providers": self._language.session_info(),
            "voice_output": self._language.voice_output,
            "session_id": session.id if session and session.active else None,
            "chat_turns": len(self._memory.chat_history),
            "storage": {
                "current_size": storage.current_size,
                "max_size": storage.max_size,
                "usage_percentage": storage.usage_percentage,
            },
        }

    # ---- 内部 ----

    def _tool_args(self, text: str, query_id: str) -> Dict[str, Any]:
        context: List[Dict[str, str]] = [
            {"role": turn.role, "content": turn.content}
            for turn in self._memory.recent_chat(self._config.context_messages)
        ]
        return {
            "query": text,
            "context": context,
            "summary_context": self.summary_context(),
            "max_length": self._config.max_length,
            "educational_focus": self._config.educational_focus,
            "text_only": not self._language.voice_output,
            "query_id": query_id,
        }

    async def _set_state(self, state: SystemState, log_ctx: Dict[str, Any]) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        await self._events.publish(
            EventType.SYSTEM_STATE_CHANGED,
            {"from": previous.value, "to": state.value},
            query_id=log_ctx.get("query_id"),
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
