"""统一的对话与结果数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- Message: 发给 LLM 的一条消息（system/user/assistant），可附带图片。
- LLMOptions: 单次生成调用的参数（温度、token 上限、是否仅文本、关联 ID）。
- LLMResponse: Provider 解析后的统一响应。
- TextChunk: 流式输出中的一个文本分片，带 completed 标记。
- ProviderSession: 每个 Provider 的会话状态，由 LanguageInterface 持有。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional


# LLM 消息角色类型
Role = Literal["system", "user", "assistant"]

# 语音模式下 generate_response 立即返回的占位文本，真实文本稍后经流式收敛得到
VOICE_PENDING_PLACEHOLDER = "[Voice response - transcription pending]"


@dataclass(frozen=True)
class Message:
    """一条发给 LLM 的消息，创建后不可变。

    - role: 消息角色。
    - content: 纯文本内容。
    - image_data: 可选的图片字节（JPEG），只有支持图片的 Provider 能消费。
    """

    role: Role
    content: str
    image_data: Optional[bytes] = None

    @property
    def has_image(self) -> bool:
        return bool(self.image_data)


@dataclass
class LLMOptions:
    """单次生成调用的可选参数。

    - text_only: 为 True 时永不走语音通道（路由分类、图表生成等视觉场景）。
    - request_id: 关联 ID，语音收敛结果按此 ID 取回。
    """

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    text_only: bool = False
    request_id: Optional[str] = None


@dataclass
class ChatUsage:
    """Token 使用统计。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


FinishReason = Literal["stop", "length", "fallback", "voice_pending"]


@dataclass
class LLMResponse:
    """Provider 返回的统一结果。"""

    content: str
    provider: str
    finish_reason: FinishReason = "stop"
    request_id: Optional[str] = None
    usage: Optional[ChatUsage] = None

    @property
    def is_voice_pending(self) -> bool:
        return self.finish_reason == "voice_pending"

    @property
    def is_fallback(self) -> bool:
        return self.finish_reason == "fallback"


@dataclass(frozen=True)
class TextChunk:
    """流式输出中的一个分片。"""

    text: str
    completed: bool = False
    provider: str = ""


@dataclass
class ProviderSession:
    """Provider 会话状态。

    initialized 只会在一次成功握手后从 False 变为 True，除非显式 reset。
    """

    provider_id: str
    initialized: bool = False
    opened_at: Optional[datetime] = None
    audio_streaming: bool = False
    pending_tool_outputs: List[str] = field(default_factory=list)
