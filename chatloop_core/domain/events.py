"""引擎产生的流式事件。

Event Sink 只会收到以下六种事件之一；每轮对话恰好以一个终止事件
（TurnDone 或 TurnError）结束，且它总是最后一个。
"""

from dataclasses import dataclass
from typing import ClassVar, Optional, Union


@dataclass(frozen=True)
class ContentDelta:
    """模型输出的一段内容增量。"""

    text: str
    kind: ClassVar[str] = "content_delta"
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class ToolInvoked:
    """即将执行某个工具调用。"""

    name: str
    arguments: str
    tool_call_id: Optional[str] = None
    kind: ClassVar[str] = "tool_invoked"
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class ToolCompleted:
    """工具执行成功；result 为展示用（可能被截断）的结果。"""

    name: str
    result: str
    tool_call_id: Optional[str] = None
    kind: ClassVar[str] = "tool_completed"
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class ToolFailed:
    """工具不存在或执行失败；本轮继续，失败信息会回填给模型。"""

    name: str
    reason: str
    tool_call_id: Optional[str] = None
    kind: ClassVar[str] = "tool_failed"
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class TurnError:
    """本轮以错误结束（模型流失败、取消、达到迭代上限等）。

    error_kind: model_stream / cancelled / iteration_limit / tool_failure / internal
    """

    reason: str
    error_kind: str = "internal"
    kind: ClassVar[str] = "turn_error"
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class TurnDone:
    """本轮成功结束，携带最后一轮 assistant 的完整内容。"""

    full_content: str
    kind: ClassVar[str] = "turn_done"
    terminal: ClassVar[bool] = True


StreamEvent = Union[ContentDelta, ToolInvoked, ToolCompleted, ToolFailed, TurnError, TurnDone]
