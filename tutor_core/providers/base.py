"""Provider 抽象接口。

LanguageInterface 不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAIClient、GeminiClient）。
- complete：一次性文本生成（不走语音通道），用于路由分类等静默场景。
- stream：流式生成，逐个产出 TextChunk，最后一个分片带 completed 标记。

任何能够产出增量文本与完成信号的后端都可以实现该协议接入。
"""

from typing import AsyncIterator, List, Optional, Protocol

from tutor_core.domain.models import LLMOptions, LLMResponse, Message, TextChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。"""

    name: str
    supports_images: bool

    def is_configured(self) -> bool:
        """是否具备调用条件（例如已配置 API Key）。"""

        ...

    async def open_session(self) -> None:
        """建立会话（连接池、握手等），由 LanguageInterface 保证只调用一次。"""

        ...

    async def close(self) -> None:
        ...

    async def complete(self, messages: List[Message], options: Optional[LLMOptions] = None) -> LLMResponse:
        ...

    def stream(self, messages: List[Message], options: Optional[LLMOptions] = None) -> AsyncIterator[TextChunk]:
        ...

    async def set_audio_streaming(self, enabled: bool) -> None:
        ...
