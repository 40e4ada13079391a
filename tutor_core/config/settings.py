"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级：
初始化参数 > 环境变量 > .env > config.yaml。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("TUTOR_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class PydanticSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、gemini",
    )
    default_model: str = Field(
        default="tutor-chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )

    # OpenAI 兼容接口
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API 基础URL",
    )
    # Gemini
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini API 基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 工具与会话超时 ----
    tool_timeout: float = Field(default=15.0, gt=0, description="单次工具执行超时（秒）")
    session_ready_timeout: float = Field(default=3.0, gt=0, description="等待 Provider 会话就绪的超时（秒）")

    # ---- 流式文本收敛 ----
    response_timeout: float = Field(default=10.0, gt=0, description="流式回答整体超时（秒）")
    silence_window: float = Field(default=1.5, gt=0, description="静默判定窗口（秒）")
    completion_settle: float = Field(default=0.5, ge=0, description="收到 completed 标记后的稳定等待（秒）")
    max_response_chars: int = Field(default=280, ge=1, description="累计文本达到该长度即立即收敛")
    voice_silence_window: float = Field(default=2.0, gt=0, description="语音转写的静默判定窗口（秒）")
    voice_completion_settle: float = Field(default=1.0, ge=0, description="语音 completed 标记后的稳定等待（秒）")
    voice_completion_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Orchestrator 等待语音转写收敛的最长时间（秒）",
    )
    stream_buffer_size: int = Field(default=64, ge=1, description="流式分片通道容量")
    enable_voice_output: bool = Field(default=False, description="是否启用语音输出")
    offline_fallback_enabled: bool = Field(
        default=True,
        description="无可用 Provider 时是否使用离线兜底回答",
    )

    # ---- Orchestrator ----
    conversation_context_messages: int = Field(default=10, ge=0, le=100, description="传给工具的最近对话条数")
    response_max_length: int = Field(default=300, ge=20, description="卡片回答的最大字符数")
    enable_test_mode: bool = Field(default=False, description="测试模式：无摘要时使用示例讲座摘要")

    # ---- MemorySystem ----
    memory_max_messages: int = Field(default=500, ge=1, description="消息日志上限")
    memory_keep_messages: int = Field(default=250, ge=1, description="消息日志超限后保留条数")
    memory_max_chat: int = Field(default=100, ge=1, description="聊天记录上限")
    memory_keep_chat: int = Field(default=50, ge=1, description="聊天记录超限后保留条数")
    memory_quota_bytes: int = Field(default=10 * 1024 * 1024, ge=1024, description="存储总配额（字节）")
    memory_component_share: float = Field(default=0.25, gt=0, le=1, description="单个组件可占配额比例")
    session_timeout: Optional[float] = Field(default=None, description="会话超时（秒），None 表示不超时")

    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "gemini_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = PydanticSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = PydanticSettings
