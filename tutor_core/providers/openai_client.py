"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收统一的 Message 列表与 LLMOptions。
2. 将其转换为 Chat Completions 接口的请求格式。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON（或 SSE 流）解析为 LLMResponse / TextChunk。

会话即一个复用的 httpx.AsyncClient，由 open_session 建立。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from tutor_core.domain.exceptions import (
    ApiError,
    NetworkError,
    RateLimitError,
    TimeoutExceededError,
    ValidationError,
)
from tutor_core.domain.models import ChatUsage, LLMOptions, LLMResponse, Message, TextChunk
from tutor_core.providers.registry import OPENAI_CONFIG, ModelConfig


class OpenAIClient:
    """OpenAI 提供方客户端实现。"""

    name = "openai"
    supports_images = OPENAI_CONFIG.supports_images

    def __init__(self, settings):
        self._settings = settings
        self._client: Optional[httpx.AsyncClient] = None
        self._audio_streaming = False

    def is_configured(self) -> bool:
        return bool(getattr(self._settings, "openai_api_key", None))

    async def open_session(self) -> None:
        if not self.is_configured():
            raise ValidationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def set_audio_streaming(self, enabled: bool) -> None:
        # HTTP 接口没有上行音频通道，只记录状态
        self._audio_streaming = enabled

    async def complete(self, messages: List[Message], options: Optional[LLMOptions] = None) -> LLMResponse:
        """执行一次非流式调用。"""

        options = options or LLMOptions()
        client = await self._session()
        payload = self._build_payload(messages, options, self._model_config())
        try:
            resp = await client.post(self._url(), json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise TimeoutExceededError(code="PROVIDER_TIMEOUT", message=str(e) or "OpenAI request timed out")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="OpenAI rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json(), options)

    async def stream(self, messages: List[Message], options: Optional[LLMOptions] = None) -> AsyncIterator[TextChunk]:
        """流式调用，逐个 yield TextChunk。"""

        options = options or LLMOptions()
        client = await self._session()
        payload = self._build_payload(messages, options, self._model_config())
        payload["stream"] = True
        try:
            async with client.stream("POST", self._url(), json=payload, headers=self._headers()) as resp:
                if resp.status_code == 429:
                    raise RateLimitError(code="RATE_LIMIT", message="OpenAI rate limit")
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise ApiError(
                        code="API_ERROR",
                        message=body.decode("utf-8", errors="replace"),
                        http_status=resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    data = _parse_sse_line(line)
                    if data is None:
                        continue
                    chunk = self._parse_stream_chunk(data)
                    if chunk is not None:
                        yield chunk
        except httpx.TimeoutException as e:
            raise TimeoutExceededError(code="PROVIDER_TIMEOUT", message=str(e) or "OpenAI stream timed out")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    async def _session(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.open_session()
        return self._client

    def _url(self) -> str:
        base = getattr(self._settings, "openai_base_url", None) or OPENAI_CONFIG.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    def _model_config(self) -> ModelConfig:
        logical = getattr(self._settings, "default_model", None) or "tutor-chat"
        return OPENAI_CONFIG.models.get(logical) or OPENAI_CONFIG.models["tutor-chat"]

    def _build_payload(self, messages: List[Message], options: LLMOptions, model_cfg: ModelConfig) -> Dict[str, Any]:
        return {
            "model": model_cfg.provider_model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": options.temperature if options.temperature is not None else model_cfg.default_temperature,
            "max_tokens": options.max_tokens or model_cfg.max_tokens,
        }

    def _parse_response(self, data: Dict[str, Any], options: LLMOptions) -> LLMResponse:
        choices = data.get("choices") or []
        first = choices[0] if choices else {}
        content = (first.get("message") or {}).get("content") or ""
        finish = "length" if first.get("finish_reason") == "length" else "stop"
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return LLMResponse(
            content=content,
            provider=self.name,
            finish_reason=finish,
            request_id=options.request_id,
            usage=usage,
        )

    def _parse_stream_chunk(self, data: Dict[str, Any]) -> Optional[TextChunk]:
        choices = data.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        text = (choice.get("delta") or {}).get("content") or ""
        completed = choice.get("finish_reason") is not None
        if not text and not completed:
            return None
        return TextChunk(text=text, completed=completed, provider=self.name)


def _parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """解析一行 SSE 数据，忽略空行、注释与 [DONE]。"""

    if not line:
        return None
    data_str = line[5:].strip() if line.startswith("data:") else line.strip()
    if not data_str or data_str == "[DONE]" or data_str.startswith(":"):
        return None
    try:
        data = json.loads(data_str)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
