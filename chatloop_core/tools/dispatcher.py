"""Tool Dispatcher：按名字解析并执行工具。

引擎只依赖 ToolDispatcher 协议；LocalToolDispatcher 是基于进程内注册表的实现，
显式构造后按引用传入各个会话，不使用全局单例。
"""

import json
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol

from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    TurnCancelled,
    ValidationError,
)
from .definitions import Tool, ToolDef


# 等待工具线程时的轮询粒度（秒），决定取消的响应速度
_POLL_INTERVAL = 0.05


class ToolDispatcher(Protocol):
    """Tool Dispatcher 协议。

    - resolve(name): 工具是否存在。
    - invoke(ctx, name, arguments_text): 执行工具并返回结果文本；
      失败时抛出异常（ToolExecutionError 等），被取消时抛出 TurnCancelled。
    """

    def resolve(self, name: str) -> bool:
        ...

    def invoke(self, ctx: TurnContext, name: str, arguments_text: str) -> str:
        ...


class LocalToolDispatcher:
    def __init__(self, tools: Iterable[Tool] = (), timeout: Optional[float] = None):
        self._tools: Dict[str, Tool] = {}
        self._timeout = timeout
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValidationError(code="DUPLICATE_TOOL", message=f"tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[ToolDef]:
        return [tool.definition for tool in self._tools.values()]

    def subset(self, names: Iterable[str]) -> "LocalToolDispatcher":
        """按名字挑出一组工具，构造新的 Dispatcher（共享工具实现，不共享注册表）。"""

        picked = []
        for name in names:
            if name not in self._tools:
                raise ValidationError(code="UNKNOWN_TOOL", message=f"tool '{name}' is not configured")
            picked.append(self._tools[name])
        return LocalToolDispatcher(picked, timeout=self._timeout)

    def invoke(self, ctx: TurnContext, name: str, arguments_text: str) -> str:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        ctx.raise_if_cancelled()
        args = self._parse_arguments(name, arguments_text)
        return self._run_with_deadline(ctx, tool, args)

    @staticmethod
    def _parse_arguments(name: str, raw: str) -> Dict[str, Any]:
        """arguments 通常是 JSON 文本，空串视为无参数。"""

        if not raw or not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(
                code="TOOL_EXECUTION_ERROR",
                message=f"invalid arguments for tool '{name}': {exc}",
            )
        if not isinstance(parsed, dict):
            raise ToolExecutionError(
                code="TOOL_EXECUTION_ERROR",
                message=f"arguments for tool '{name}' must be a JSON object",
            )
        return parsed

    def _run_with_deadline(self, ctx: TurnContext, tool: Tool, args: Dict[str, Any]) -> str:
        """在独立线程中执行工具，同时观察超时与取消。

        Python 无法强行终止正在运行的函数；超时或取消后工具线程会在后台跑完，
        其结果被丢弃，已产生的副作用不回滚。
        """

        call_ctx = ctx.child(timeout=self._timeout)
        outcome: Dict[str, Any] = {}
        done = threading.Event()

        def worker() -> None:
            try:
                outcome["result"] = tool.func(call_ctx, args)
            except BaseException as exc:  # noqa: BLE001 - 原样转交给调用线程
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=worker, name=f"tool-{tool.name}", daemon=True).start()
        while not done.wait(_POLL_INTERVAL):
            if done.is_set():
                break
            if ctx.cancelled:
                call_ctx.cancel()
                raise TurnCancelled()
            if call_ctx.cancelled:
                raise ToolExecutionError(
                    code="TOOL_TIMEOUT",
                    message=f"tool '{tool.name}' timed out after {self._timeout}s",
                )

        error = outcome.get("error")
        if isinstance(error, (TurnCancelled, ToolExecutionError)):
            raise error
        if error is not None:
            raise ToolExecutionError(code="TOOL_EXECUTION_ERROR", message=str(error) or type(error).__name__) from error
        result = outcome.get("result")
        return "" if result is None else str(result)
