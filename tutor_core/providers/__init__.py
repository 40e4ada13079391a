"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (openai_client、gemini_client)。
"""

from typing import Dict, Literal, Optional

from tutor_core.config.settings import settings
from tutor_core.providers.base import ProviderClient
from tutor_core.providers.openai_client import OpenAIClient
from tutor_core.providers.gemini_client import GeminiClient


def create_provider(name: Optional[str] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "openai")).lower()
    if provider_name == "gemini":
        return GeminiClient(settings)
    return OpenAIClient(settings)


def create_all_providers() -> Dict[str, ProviderClient]:
    """创建全部内置 Provider，供 LanguageInterface 在两者之间切换与回退。"""

    return {
        "openai": OpenAIClient(settings),
        "gemini": GeminiClient(settings),
    }


DefaultProviderName = Literal["openai", "gemini"]
