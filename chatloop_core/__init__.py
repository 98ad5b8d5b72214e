"""Chatloop Core 顶层包。

该包提供 LLM 多轮对话循环的核心实现，
包括配置加载、领域模型、Provider 流式适配、工具分发、
对话引擎、事件输出与会话管理等能力。
"""

from chatloop_core.agents.engine import ConversationEngine, EngineConfig, TurnHandle
from chatloop_core.api.service import SessionService

__all__ = ["ConversationEngine", "EngineConfig", "SessionService", "TurnHandle"]
