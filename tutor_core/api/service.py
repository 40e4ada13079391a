"""对外 API 服务模块。

提供简化的函数接口供上层应用（ASR 桥接、演示脚本）调用。
"""

import asyncio
from typing import Dict, Mapping, Optional

from tutor_core.agents.orchestrator import Orchestrator, OrchestratorConfig
from tutor_core.config.settings import settings
from tutor_core.domain.conversation import KeyValueStore
from tutor_core.infrastructure.events.bus import EventBus
from tutor_core.infrastructure.storage.json_store import JsonKeyValueStore
from tutor_core.language.interface import LanguageInterface
from tutor_core.memory.system import MemorySystem
from tutor_core.providers.base import ProviderClient
from tutor_core.tools import default_tools
from tutor_core.tools.spatial import ImageSource


_orchestrator: Optional[Orchestrator] = None
_orchestrator_lock = asyncio.Lock()


def create_orchestrator(
    providers: Optional[Mapping[str, ProviderClient]] = None,
    store: Optional[KeyValueStore] = None,
    *,
    events: Optional[EventBus] = None,
    image_source: Optional[ImageSource] = None,
    config: Optional[OrchestratorConfig] = None,
) -> Orchestrator:
    """按配置装配一个完整的 Orchestrator（尚未 initialize）。"""

    language = LanguageInterface(providers)
    memory = MemorySystem(store if store is not None else JsonKeyValueStore(root=settings.storage_root))
    return Orchestrator(
        language=language,
        memory=memory,
        events=events,
        config=config,
        tools=default_tools(language, image_source=image_source),
    )


async def get_default_orchestrator() -> Orchestrator:
    """获取默认的已初始化 Orchestrator 实例（单例）。"""

    global _orchestrator
    async with _orchestrator_lock:
        if _orchestrator is None:
            orchestrator = create_orchestrator()
            await orchestrator.initialize()
            _orchestrator = orchestrator
    return _orchestrator


async def ask(text: str) -> Dict[str, object]:
    """处理一次查询并返回回答与当前状态摘要。"""

    orchestrator = await get_default_orchestrator()
    response = await orchestrator.process_query(text)
    status = orchestrator.status()
    return {
        "response": response,
        "last_query": status["last_query"],
        "state": status["state"],
    }


async def shutdown_default_orchestrator() -> None:
    global _orchestrator
    async with _orchestrator_lock:
        if _orchestrator is not None:
            await _orchestrator.shutdown()
            _orchestrator = None
