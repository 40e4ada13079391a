"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "tutor-chat"。
- provider_model：厂商实际提供的模型 ID，例如 "gpt-4o-mini"。

同时记录每个 Provider 是否能消费图片输入，LanguageInterface 据此在带图请求时切换 Provider。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    supports_images: bool
    models: Dict[str, ModelConfig]


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    supports_images=False,
    models={
        "tutor-chat": ModelConfig(
            logical_name="tutor-chat",
            provider_model="gpt-4o-mini",
            max_tokens=150,
            default_temperature=0.7,
        )
    },
)

# Gemini 支持内联图片，空间/摄像头类问题会被路由到这里
GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    supports_images=True,
    models={
        "tutor-chat": ModelConfig(
            logical_name="tutor-chat",
            provider_model="gemini-2.0-flash",
            max_tokens=150,
            default_temperature=0.7,
        )
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "gemini": GEMINI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
