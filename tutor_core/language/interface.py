"""LanguageInterface：双 Provider 抽象。

对上层（路由器、各工具）只暴露四个能力：
- generate_response：可能走语音通道的生成，流式输出经 reconcile 收敛为一个文本；
- generate_text_response：纯文本一次性生成，永不发声（路由分类使用）；
- stream_audio：打开/关闭当前 Provider 的麦克风上行；
- send_tool_result：把工具输出带入下一次请求。

Provider 选择策略：默认 Provider 可配置；带图请求在默认 Provider 不支持图片时
仅本次切换到支持图片的 Provider；所选 Provider 未配置时回退到另一个并告警；
两者都不可用时返回离线兜底回答。每个 Provider 的会话只初始化一次，并发调用共享同一次握手。
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import (
    BusinessError,
    NotFoundError,
    ProviderUnavailableError,
    TimeoutExceededError,
    ValidationError,
)
from tutor_core.domain.models import (
    VOICE_PENDING_PLACEHOLDER,
    LLMOptions,
    LLMResponse,
    Message,
    ProviderSession,
)
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.language.fallback import offline_response
from tutor_core.language.reconciler import (
    END_OF_STREAM,
    ReconciledText,
    ReconcilePolicy,
    StreamAccumulator,
    reconcile,
)
from tutor_core.providers.base import ProviderClient


@dataclass
class _PendingReconciliation:
    task: "asyncio.Task[ReconciledText]"
    pump: "asyncio.Task[None]"
    accumulator: StreamAccumulator
    policy: ReconcilePolicy


class LanguageInterface:
    def __init__(
        self,
        providers: Optional[Mapping[str, ProviderClient]] = None,
        default_provider: Optional[str] = None,
        *,
        voice_output: Optional[bool] = None,
        offline_fallback: Optional[bool] = None,
        session_ready_timeout: Optional[float] = None,
        text_policy: Optional[ReconcilePolicy] = None,
        voice_policy: Optional[ReconcilePolicy] = None,
        stream_buffer_size: Optional[int] = None,
    ):
        if providers is None:
            from tutor_core.providers import create_all_providers

            providers = create_all_providers()
        self._providers: Dict[str, ProviderClient] = {k.lower(): v for k, v in providers.items()}
        self._default = (default_provider or settings.default_provider).lower()
        self._voice_output = settings.enable_voice_output if voice_output is None else voice_output
        self._offline_fallback = settings.offline_fallback_enabled if offline_fallback is None else offline_fallback
        self._ready_timeout = session_ready_timeout or settings.session_ready_timeout
        self._text_policy = text_policy or ReconcilePolicy.for_text()
        self._voice_policy = voice_policy or ReconcilePolicy.for_voice()
        self._buffer_size = stream_buffer_size or settings.stream_buffer_size
        self._sessions: Dict[str, ProviderSession] = {name: ProviderSession(provider_id=name) for name in self._providers}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, _PendingReconciliation] = {}

    # ---- 配置与状态 ----

    @property
    def default_provider(self) -> str:
        return self._default

    @property
    def voice_output(self) -> bool:
        return self._voice_output

    @property
    def offline_fallback(self) -> bool:
        return self._offline_fallback

    def set_voice_output(self, enabled: bool) -> None:
        self._voice_output = enabled

    def set_default_provider(self, name: str) -> None:
        key = name.lower()
        if key not in self._providers:
            raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {name!r}")
        self._default = key
        logger.info("Default provider changed", extra={"extra": {"provider": key}})

    def available_providers(self) -> List[str]:
        return [name for name, client in self._providers.items() if client.is_configured()]

    def session_info(self) -> Dict[str, Dict[str, Any]]:
        info: Dict[str, Dict[str, Any]] = {}
        for name, client in self._providers.items():
            session = self._sessions[name]
            info[name] = {
                "initialized": session.initialized,
                "configured": client.is_configured(),
                "supports_images": client.supports_images,
                "audio_streaming": session.audio_streaming,
                "opened_at": session.opened_at.isoformat() if session.opened_at else None,
                "default": name == self._default,
            }
        return info

    def select_provider(self, messages: List[Message], preferred: Optional[str] = None) -> ProviderClient:
        """按选择策略挑选本次调用的 Provider，没有可用 Provider 时抛出 ProviderUnavailableError。"""

        name = (preferred or self._default).lower()
        client = self._providers.get(name)
        if client is None:
            raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {name!r}")

        if any(m.has_image for m in messages) and not client.supports_images:
            image_capable = next(
                (c for c in self._providers.values() if c.supports_images and c.is_configured()),
                None,
            )
            if image_capable is not None:
                logger.info(
                    "Switching provider for image input",
                    extra={"extra": {"from": client.name, "to": image_capable.name}},
                )
                client = image_capable

        if client.is_configured():
            return client
        for other in self._providers.values():
            if other is not client and other.is_configured():
                logger.warning(
                    "Provider not configured, falling back",
                    extra={"extra": {"from": client.name, "to": other.name}},
                )
                return other
        raise ProviderUnavailableError(code="NO_PROVIDER", message="No language provider is configured")

    async def ensure_session(self, client: ProviderClient) -> ProviderSession:
        """幂等地初始化 Provider 会话，并发调用方等待同一次握手。"""

        session = self._sessions.setdefault(client.name, ProviderSession(provider_id=client.name))
        if session.initialized:
            return session
        lock = self._locks.setdefault(client.name, asyncio.Lock())
        async with lock:
            if session.initialized:
                return session
            try:
                await asyncio.wait_for(client.open_session(), timeout=self._ready_timeout)
            except asyncio.TimeoutError:
                raise TimeoutExceededError(
                    code="SESSION_TIMEOUT",
                    message=f"Provider '{client.name}' session not ready after {self._ready_timeout:g}s",
                    provider=client.name,
                )
            session.initialized = True
            session.opened_at = datetime.now(timezone.utc)
            logger.info("Provider session initialized", extra={"extra": {"provider": client.name}})
        return session

    # ---- 生成 ----

    async def generate_response(self, messages: List[Message], options: Optional[LLMOptions] = None) -> LLMResponse:
        """生成回答。

        语音模式（开启语音输出且 text_only=False）下立即返回占位响应，
        真正的文本由后台收敛，调用方需用 request_id 调 await_reconciliation 取回。
        其他情况下在本次调用内完成流式收敛；任何 Provider 错误都降级为离线兜底回答。
        """

        options = options or LLMOptions()
        request_id = options.request_id or f"r-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {"request_id": request_id}

        try:
            client = self.select_provider(messages)
            log_ctx["provider"] = client.name
            await self.ensure_session(client)
        except BusinessError as exc:
            return self._fallback_or_raise(exc, messages, request_id, log_ctx)

        messages = self._with_tool_outputs(client.name, messages)
        if self._voice_output and not options.text_only:
            self._start(client, messages, options, request_id, self._voice_policy, track=True)
            self._log(logging.INFO, "Voice response pending", log_ctx)
            return LLMResponse(
                content=VOICE_PENDING_PLACEHOLDER,
                provider=client.name,
                finish_reason="voice_pending",
                request_id=request_id,
            )

        pending = self._start(client, messages, options, request_id, self._text_policy, track=False)
        reconciled = await pending.task
        pump_error = _task_error(pending.pump)
        if reconciled.chunk_count == 0 and pump_error is not None:
            return self._fallback_or_raise(pump_error, messages, request_id, log_ctx)
        self._log(
            logging.INFO,
            "Response reconciled",
            log_ctx,
            trigger=reconciled.trigger,
            chunks=reconciled.chunk_count,
            chars=len(reconciled.text),
        )
        return LLMResponse(content=reconciled.text, provider=client.name, request_id=request_id)

    async def generate_text_response(
        self,
        messages: List[Message],
        options: Optional[LLMOptions] = None,
        provider: Optional[str] = None,
    ) -> str:
        """纯文本生成，不经过语音通道，也不做离线兜底：错误直接抛给调用方。"""

        options = replace(options, text_only=True) if options else LLMOptions(text_only=True)
        client = self.select_provider(messages, preferred=provider)
        await self.ensure_session(client)
        resp = await client.complete(self._with_tool_outputs(client.name, messages), options)
        logger.info(
            "Text response generated",
            extra={"extra": {"provider": client.name, "chars": len(resp.content)}},
        )
        return (resp.content or "").strip()

    async def await_reconciliation(self, request_id: str, timeout: Optional[float] = None) -> ReconciledText:
        """等待语音请求的收敛结果；超过 timeout 时以已累计的文本收敛。"""

        pending = self._pending.get(request_id)
        if pending is None:
            raise NotFoundError(code="UNKNOWN_REQUEST", message=f"No pending response for {request_id}")
        done, _ = await asyncio.wait({pending.task}, timeout=timeout)
        self._pending.pop(request_id, None)
        if pending.task in done:
            return pending.task.result()
        pending.accumulator.finalize("deadline", pending.policy.empty_text)
        logger.warning(
            "Reconciliation deadline elapsed",
            extra={"extra": {"request_id": request_id, "chars": len(pending.accumulator.buffer)}},
        )
        return pending.accumulator.result()

    def has_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    # ---- 音频与工具结果 ----

    async def stream_audio(self, enabled: bool) -> None:
        client = self.select_provider([])
        session = await self.ensure_session(client)
        await client.set_audio_streaming(enabled)
        session.audio_streaming = enabled
        logger.info("Audio streaming toggled", extra={"extra": {"provider": client.name, "enabled": enabled}})

    async def send_tool_result(self, call_id: str, result: Any) -> None:
        client = self.select_provider([])
        session = await self.ensure_session(client)
        output = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
        session.pending_tool_outputs.append(f"[{call_id}] {output}")
        logger.info("Queued tool result", extra={"extra": {"provider": client.name, "call_id": call_id}})

    # ---- 会话管理 ----

    async def reset_session(self, name: Optional[str] = None) -> None:
        names = [name.lower()] if name else list(self._providers)
        for key in names:
            client = self._providers.get(key)
            if client is None:
                continue
            await client.close()
            self._sessions[key] = ProviderSession(provider_id=key)
            logger.info("Provider session reset", extra={"extra": {"provider": key}})

    async def test_connection(self, name: Optional[str] = None) -> bool:
        try:
            reply = await self.generate_text_response([Message(role="user", content="Hello")], provider=name)
        except BusinessError as exc:
            logger.warning("Connection test failed", extra={"extra": {"provider": name, "error": exc.message}})
            return False
        return bool(reply)

    async def close(self) -> None:
        for pending in self._pending.values():
            pending.accumulator.finalize("closed", pending.policy.empty_text)
        self._pending.clear()
        await self.reset_session()

    # ---- 内部 ----

    def _start(
        self,
        client: ProviderClient,
        messages: List[Message],
        options: LLMOptions,
        request_id: str,
        policy: ReconcilePolicy,
        track: bool,
    ) -> _PendingReconciliation:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._buffer_size)
        accumulator = StreamAccumulator(request_id=request_id)
        pump = asyncio.ensure_future(self._pump(client, messages, options, queue, accumulator))
        pump.add_done_callback(_log_pump_error)
        task = asyncio.ensure_future(reconcile(queue, accumulator, policy))
        pending = _PendingReconciliation(task=task, pump=pump, accumulator=accumulator, policy=policy)
        if track:
            self._pending[request_id] = pending
        return pending

    @staticmethod
    async def _pump(
        client: ProviderClient,
        messages: List[Message],
        options: LLMOptions,
        queue: asyncio.Queue,
        accumulator: StreamAccumulator,
    ) -> None:
        """把 Provider 流转发进通道；收敛后的分片直接丢弃，但不中断 Provider 流。"""

        try:
            async for chunk in client.stream(messages, options):
                if accumulator.finalized:
                    continue
                await queue.put(chunk)
        finally:
            if not accumulator.finalized:
                await queue.put(END_OF_STREAM)

    def _with_tool_outputs(self, name: str, messages: List[Message]) -> List[Message]:
        session = self._sessions.get(name)
        if not session or not session.pending_tool_outputs:
            return list(messages)
        outputs = "\n".join(session.pending_tool_outputs)
        session.pending_tool_outputs.clear()
        return [Message(role="system", content=f"TOOL RESULTS:\n{outputs}")] + list(messages)

    def _fallback_or_raise(
        self,
        exc: BaseException,
        messages: List[Message],
        request_id: str,
        log_ctx: Dict[str, Any],
    ) -> LLMResponse:
        if not self._offline_fallback:
            raise exc
        self._log(logging.WARNING, "Using offline fallback response", log_ctx, error=str(exc))
        response = offline_response(messages)
        response.request_id = request_id
        return response

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _task_error(task: "asyncio.Future[Any]") -> Optional[BaseException]:
    if not task.done() or task.cancelled():
        return None
    return task.exception()


def _log_pump_error(task: "asyncio.Future[Any]") -> None:
    exc = _task_error(task)
    if exc is not None:
        logger.warning("Provider stream failed", extra={"extra": {"error": str(exc)}})
