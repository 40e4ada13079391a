import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import NotFoundError, TimeoutExceededError, ValidationError
from tutor_core.infrastructure.events.bus import EventBus, EventType
from tutor_core.infrastructure.logging.logger import logger
from .definitions import ToolDescriptor, ToolParam, ToolResult


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, (list, tuple)),
    "object": lambda v: isinstance(v, dict),
}


class DisplaySink(Protocol):
    """展示执行状态的外部协作者（例如 AR 卡片上的一行状态文本）。"""

    def show(self, text: str) -> None:
        ...


def validate_arguments(params: Dict[str, ToolParam], args: Dict[str, Any]) -> None:
    """按参数声明校验实参，失败时抛出 ValidationError。

    - 必填参数必须出现；
    - 出现的参数必须符合声明的基础类型，声明了 enum 时还必须是其中之一；
    - 可选参数允许显式传 None。
    """

    missing = [name for name, p in params.items() if p.required and name not in args]
    if missing:
        raise ValidationError(
            code="INVALID_ARGUMENTS",
            message=f"Missing required parameter(s): {', '.join(missing)}",
        )
    for name, value in args.items():
        param = params.get(name)
        if param is None:
            continue
        if value is None:
            if param.required:
                raise ValidationError(
                    code="INVALID_ARGUMENTS",
                    message=f"Parameter '{name}' is required and cannot be null",
                )
            continue
        check = _TYPE_CHECKS.get(param.type or "")
        if check and not check(value):
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"Parameter '{name}' must be of type {param.type}",
            )
        if param.enum is not None and value not in param.enum:
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"Parameter '{name}' must be one of {param.enum}",
            )


def _format_args(args: Dict[str, Any], limit: int = 80) -> str:
    text = json.dumps(args, ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


class ToolExecutor:
    """工具注册表与执行器。

    所有工具调用都经过这里：参数校验、超时竞速、埋点事件与状态展示，
    因此具体工具实现不需要各自处理这些防御逻辑，调用方只需要处理 ToolResult 一种失败形态。
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        events: Optional[EventBus] = None,
        display: Optional[DisplaySink] = None,
    ):
        self._tools: Dict[str, ToolDescriptor] = {}
        self._timeout = timeout if timeout is not None else settings.tool_timeout
        self._events = events
        self._display = display
        self._executions = 0
        self._failures = 0

    @property
    def timeout(self) -> float:
        return self._timeout

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            logger.warning(
                "Tool already registered, replacing",
                extra={"extra": {"tool": descriptor.name}},
            )
        self._tools[descriptor.name] = descriptor
        logger.info("Registered tool", extra={"extra": {"tool": descriptor.name, "params": list(descriptor.params)}})

    def unregister(self, name: str) -> bool:
        removed = self._tools.pop(name, None) is not None
        if removed:
            logger.info("Unregistered tool", extra={"extra": {"tool": name}})
        return removed

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def list_tools(self) -> List[ToolDescriptor]:
        return list(self._tools.values())

    def clear(self) -> None:
        self._tools.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "registered": len(self._tools),
            "tools": sorted(self._tools),
            "executions": self._executions,
            "failures": self._failures,
        }

    async def execute_call(self, name: str, arguments: str) -> ToolResult:
        """执行参数为 JSON 字符串的调用（例如 Provider 发起的 function call）。"""

        try:
            args = json.loads(arguments) if arguments else {}
        except json.JSONDecodeError as exc:
            return await self._finish(name, ToolResult.failure(f"Invalid JSON arguments: {exc}", "INVALID_ARGUMENTS"), 0.0)
        if not isinstance(args, dict):
            return await self._finish(name, ToolResult.failure("Arguments must be a JSON object", "INVALID_ARGUMENTS"), 0.0)
        return await self.execute(name, args)

    async def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise NotFoundError(code="TOOL_NOT_FOUND", message=f"Tool '{name}' is not registered", tool=name)
        args = dict(args or {})
        self._show(f"🔧 {name}({_format_args(args)})")
        start = time.perf_counter()

        try:
            validate_arguments(descriptor.params, args)
        except ValidationError as exc:
            result = ToolResult.failure(f"Parameter validation failed: {exc.message}", exc.code)
            return await self._finish(name, result, start)

        task = asyncio.ensure_future(descriptor.handler(args))
        done, _ = await asyncio.wait({task}, timeout=self._timeout)
        if task not in done:
            # 超时后不取消处理函数，迟到的结果只记录日志后丢弃
            task.add_done_callback(lambda t, tool=name: self._discard_late_result(tool, t))
            err = TimeoutExceededError(
                code="TOOL_TIMEOUT",
                message=f"Tool '{name}' timed out after {self._timeout:g}s",
                tool=name,
            )
            return await self._finish(name, ToolResult.failure(err.message, err.code), start)

        try:
            raw = task.result()
        except Exception as exc:
            logger.log(
                logging.ERROR,
                "Tool handler raised",
                exc_info=True,
                extra={"extra": {"tool": name}},
            )
            return await self._finish(name, ToolResult.failure(str(exc) or type(exc).__name__), start)

        result = raw if isinstance(raw, ToolResult) else ToolResult.ok(raw)
        return await self._finish(name, result, start)

    async def _finish(self, name: str, result: ToolResult, start: float) -> ToolResult:
        duration_ms = round((time.perf_counter() - start) * 1000, 2) if start else 0.0
        result.execution_time_ms = duration_ms
        self._executions += 1
        payload = {"tool": name, "duration_ms": duration_ms}
        if result.success:
            self._show(f"✅ {name} completed ({duration_ms:.0f}ms)")
            logger.info("Tool executed", extra={"extra": payload})
            event_type = EventType.TOOL_EXECUTED
        else:
            self._failures += 1
            self._show(f"❌ {name} failed: {result.error} ({duration_ms:.0f}ms)")
            payload.update(error=result.error, error_code=result.error_code)
            logger.warning("Tool failed", extra={"extra": payload})
            event_type = EventType.TOOL_FAILED
        if self._events is not None:
            await self._events.publish(event_type, payload)
        return result

    def _show(self, text: str) -> None:
        if self._display is not None:
            self._display.show(text)

    @staticmethod
    def _discard_late_result(name: str, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        logger.info(
            "Discarded late tool result",
            extra={"extra": {"tool": name, "error": str(exc) if exc else None}},
        )
