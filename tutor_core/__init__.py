"""Tutor Core 顶层包。

该包提供教学语音助手的 Agent 编排核心实现，
包括配置加载、领域模型、双 Provider 适配与流式文本收敛、
工具注册/执行/路由、有界记忆存储以及查询状态机。
"""

from tutor_core.agents.orchestrator import Orchestrator, OrchestratorConfig
from tutor_core.api.service import ask, create_orchestrator

__all__ = ["Orchestrator", "OrchestratorConfig", "ask", "create_orchestrator"]
