"""Gemini Provider 适配器。

与 OpenAIClient 结构一致，区别在于：
- 请求体使用 contents/parts 结构，assistant 角色映射为 model；
- system 消息合并进 systemInstruction；
- 图片以 inline_data（base64）形式随 user 消息发送，因此可处理摄像头画面。
"""

import base64
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
from tutor_core.providers.openai_client import _parse_sse_line
from tutor_core.providers.registry import GEMINI_CONFIG, ModelConfig


class GeminiClient:
    """Gemini 提供方客户端实现。"""

    name = "gemini"
    supports_images = GEMINI_CONFIG.supports_images

    def __init__(self, settings):
        self._settings = settings
        self._client: Optional[httpx.AsyncClient] = None
        self._audio_streaming = False

    def is_configured(self) -> bool:
        return bool(getattr(self._settings, "gemini_api_key", None))

    async def open_session(self) -> None:
        if not self.is_configured():
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def set_audio_streaming(self, enabled: bool) -> None:
        self._audio_streaming = enabled

    async def complete(self, messages: List[Message], options: Optional[LLMOptions] = None) -> LLMResponse:
        options = options or LLMOptions()
        client = await self._session()
        model_cfg = self._model_config()
        payload = self._build_payload(messages, options, model_cfg)
        try:
            resp = await client.post(
                self._url(model_cfg, "generateContent"),
                json=payload,
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            raise TimeoutExceededError(code="PROVIDER_TIMEOUT", message=str(e) or "Gemini request timed out")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Gemini rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json(), options)

    async def stream(self, messages: List[Message], options: Optional[LLMOptions] = None) -> AsyncIterator[TextChunk]:
        options = options or LLMOptions()
        client = await self._session()
        model_cfg = self._model_config()
        payload = self._build_payload(messages, options, model_cfg)
        url = self._url(model_cfg, "streamGenerateContent") + "?alt=sse"
        try:
            async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code == 429:
                    raise RateLimitError(code="RATE_LIMIT", message="Gemini rate limit")
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
            raise TimeoutExceededError(code="PROVIDER_TIMEOUT", message=str(e) or "Gemini stream timed out")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    async def _session(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.open_session()
        return self._client

    def _url(self, model_cfg: ModelConfig, method: str) -> str:
        base = getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url
        return f"{base.rstrip('/')}/models/{model_cfg.provider_model}:{method}"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._settings.gemini_api_key,
            "Content-Type": "application/json",
        }

    def _model_config(self) -> ModelConfig:
        logical = getattr(self._settings, "default_model", None) or "tutor-chat"
        return GEMINI_CONFIG.models.get(logical) or GEMINI_CONFIG.models["tutor-chat"]

    def _build_payload(self, messages: List[Message], options: LLMOptions, model_cfg: ModelConfig) -> Dict[str, Any]:
        system_parts = [{"text": m.content} for m in messages if m.role == "system" and m.content]
        contents = [self._message_to_content(m) for m in messages if m.role != "system"]
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature if options.temperature is not None else model_cfg.default_temperature,
                "maxOutputTokens": options.max_tokens or model_cfg.max_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    @staticmethod
    def _message_to_content(message: Message) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        if message.image_data:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": "image/jpeg",
                        "data": base64.b64encode(message.image_data).decode("ascii"),
                    }
                }
            )
        return {"role": "model" if message.role == "assistant" else "user", "parts": parts}

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> tuple:
        candidates = data.get("candidates") or []
        if not candidates:
            return "", None
        first = candidates[0]
        parts = (first.get("content") or {}).get("parts") or []
        text = "".join(p.get("text") or "" for p in parts)
        return text, first.get("finishReason")

    def _parse_response(self, data: Dict[str, Any], options: LLMOptions) -> LLMResponse:
        text, finish = self._candidate_text(data)
        usage_raw = data.get("usageMetadata") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("promptTokenCount", 0),
                completion_tokens=usage_raw.get("candidatesTokenCount", 0),
                total_tokens=usage_raw.get("totalTokenCount", 0),
            )
        return LLMResponse(
            content=text,
            provider=self.name,
            finish_reason="length" if finish == "MAX_TOKENS" else "stop",
            request_id=options.request_id,
            usage=usage,
        )

    def _parse_stream_chunk(self, data: Dict[str, Any]) -> Optional[TextChunk]:
        text, finish = self._candidate_text(data)
        completed = finish is not None
        if not text and not completed:
            return None
        return TextChunk(text=text, completed=completed, provider=self.name)
