"""对外 API 服务模块。

SessionService 管理多个会话，每个会话独占一个 ConversationEngine；
Model Adapter 工厂与 Tool Dispatcher 都显式传入，不使用模块级单例。
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from chatloop_core.agents.engine import ConversationEngine, EngineConfig, TurnHandle
from chatloop_core.agents.sinks import EventSink, LoggingEventSink
from chatloop_core.config.settings import AgentPreset, Settings, settings as default_settings
from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.events import TurnDone
from chatloop_core.domain.exceptions import SessionNotFoundError, ValidationError
from chatloop_core.domain.models import Message
from chatloop_core.infrastructure.logging.logger import logger
from chatloop_core.providers import create_provider
from chatloop_core.providers.base import ModelStreamAdapter
from chatloop_core.tools.definitions import ToolDef
from chatloop_core.tools.dispatcher import ToolDispatcher
from chatloop_core.tools.factory import build_dispatcher


# (provider, model, tools) -> adapter；provider/model 为 None 时取配置默认值
AdapterFactory = Callable[[Optional[str], Optional[str], Sequence[ToolDef]], ModelStreamAdapter]


@dataclass
class _Session:
    id: str
    preset: Optional[str]
    engine: ConversationEngine
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    handle: Optional[TurnHandle] = None
    # run() 进行中的一轮所用的 ctx，结束后清空
    ctx: Optional[TurnContext] = None


class SessionService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        dispatcher: Optional[ToolDispatcher] = None,
    ):
        self._settings = settings or default_settings
        self._adapter_factory = adapter_factory or self._default_adapter_factory
        if dispatcher is None:
            dispatcher = build_dispatcher(self._settings.tools, timeout=self._settings.tool_timeout)
        self._dispatcher = dispatcher
        self._sessions: Dict[str, _Session] = {}
        self._lock = threading.Lock()

    def _default_adapter_factory(
        self, provider: Optional[str], model: Optional[str], tools: Sequence[ToolDef]
    ) -> ModelStreamAdapter:
        return create_provider(provider, model, tools, self._settings)

    def create_session(self, preset: Optional[str] = None) -> str:
        """创建会话并返回会话 ID。

        Args:
            preset: settings.agents 中的预设名；为空时使用默认 provider/model 与全部工具。

        Raises:
            ValidationError: 预设不存在，或预设引用了未配置的工具。
        """

        cfg = self._resolve_preset(preset)
        dispatcher = self._dispatcher_for(cfg)
        definitions = dispatcher.definitions() if hasattr(dispatcher, "definitions") else []
        adapter = self._adapter_factory(cfg.provider, cfg.model, definitions)
        session_id = f"s-{uuid4().hex}"
        engine = ConversationEngine(
            adapter,
            dispatcher,
            config=EngineConfig.from_settings(self._settings),
            system_prompt=cfg.system or None,
            session_id=session_id,
        )
        with self._lock:
            self._sessions[session_id] = _Session(id=session_id, preset=preset, engine=engine)
        logger.info(
            "Created session",
            extra={"extra": {"session_id": session_id, "preset": preset, "tools": len(definitions)}},
        )
        return session_id

    def _resolve_preset(self, preset: Optional[str]) -> AgentPreset:
        if preset is None:
            return AgentPreset()
        cfg = self._settings.agents.get(preset)
        if cfg is None:
            raise ValidationError(code="UNKNOWN_PRESET", message=f"unknown agent preset: {preset}")
        return cfg

    def _dispatcher_for(self, cfg: AgentPreset) -> ToolDispatcher:
        if not cfg.tools:
            return self._dispatcher
        subset = getattr(self._dispatcher, "subset", None)
        if subset is None:
            raise ValidationError(
                code="UNSUPPORTED_DISPATCHER",
                message="dispatcher cannot be filtered by preset tools",
            )
        return subset(cfg.tools)

    def _get(self, session_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def submit(
        self,
        session_id: str,
        text: str,
        ctx: Optional[TurnContext] = None,
        sink: Optional[EventSink] = None,
    ) -> TurnHandle:
        session = self._get(session_id)
        handle = session.engine.submit_turn(text, ctx=ctx, sink=sink)
        session.handle = handle
        return handle

    def run(self, session_id: str, text: str, ctx: Optional[TurnContext] = None) -> Dict[str, Any]:
        """同步执行一轮对话。

        Returns:
            包含 content、status（done / error）、iteration 的字典；出错时附带 error 与 error_kind。
        """

        session = self._get(session_id)
        sink = LoggingEventSink(logger)
        ctx = ctx or TurnContext()
        session.ctx = ctx
        try:
            terminal = session.engine.run_turn(text, sink, ctx=ctx)
        finally:
            session.ctx = None
        result: Dict[str, Any] = {
            "session_id": session_id,
            "content": terminal.full_content if isinstance(terminal, TurnDone) else "",
            "status": session.engine.state.status,
            "iteration": session.engine.state.iteration,
        }
        if not isinstance(terminal, TurnDone):
            result["error"] = terminal.reason
            result["error_kind"] = terminal.error_kind
            logger.error(
                f"Turn failed: {terminal.reason}",
                extra={"extra": {"session_id": session_id, "error_kind": terminal.error_kind}},
            )
        return result

    def history(self, session_id: str) -> List[Dict[str, Any]]:
        session = self._get(session_id)
        return [_message_to_dict(m) for m in session.engine.history()]

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [
            {
                "id": s.id,
                "preset": s.preset,
                "status": s.engine.state.status,
                "running": s.engine.state.running,
                "iteration": s.engine.state.iteration,
                "messages": s.engine.state.message_count,
                "created_at": s.created_at.isoformat(),
            }
            for s in sessions
        ]

    def close_session(self, session_id: str) -> None:
        """移除会话；若有进行中的一轮则先取消它。"""

        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.handle is not None and not session.handle.done:
            session.handle.cancel("session closed")
        ctx = session.ctx
        if ctx is not None:
            ctx.cancel("session closed")
        logger.info("Closed session", extra={"extra": {"session_id": session_id}})


def _message_to_dict(message: Message) -> Dict[str, Any]:
    data: Dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        data["tool_calls"] = [
            {"id": c.id, "name": c.name, "arguments": c.arguments} for c in message.tool_calls
        ]
    if message.tool_call_id:
        data["tool_call_id"] = message.tool_call_id
    return data
