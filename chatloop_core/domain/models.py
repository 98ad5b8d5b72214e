"""统一的对话数据模型。

本模块定义了引擎、Model Adapter 与 Tool Dispatcher 之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant/tool），追加进历史后不可变。
- ToolCall: 模型发起的一次工具调用，arguments 对引擎而言是不透明的文本。
- ToolResult: 一次工具调用的结果，output 与 failure 二选一。
- MessageDelta / ToolCallFragment: Model Adapter 流式产出的增量片段。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple

from chatloop_core.domain.exceptions import ValidationError


# 与 OpenAI 等厂商的 role 字段对应
Role = Literal["system", "user", "assistant", "tool"]

ROLES = ("system", "user", "assistant", "tool")


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。

    - id: 在产生它的 assistant 消息内唯一，tool 消息用它回指。
    - name: 工具名，由 Dispatcher 解析。
    - arguments: 序列化后的参数（通常是 JSON 文本），引擎原样转交给 Dispatcher。
    """

    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class Message:
    """一条对话消息。

    - role: 消息角色，四者互斥。
    - content: 纯文本内容，可以为空（例如只有工具调用的 assistant 消息）。
    - tool_calls: 仅 assistant 消息有意义，保存模型发起的工具调用（有序）。
    - tool_call_id: 仅 tool 消息设置，回指它所回答的 ToolCall。
    """

    role: Role
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"unknown role: {self.role!r}")
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls or ()))
        if self.tool_calls and self.role != "assistant":
            raise ValidationError(
                code="VALIDATION_ERROR",
                message=f"{self.role} message cannot carry tool_calls",
            )
        if self.role == "tool" and not self.tool_call_id:
            raise ValidationError(code="VALIDATION_ERROR", message="tool message requires tool_call_id")
        if self.role != "tool" and self.tool_call_id is not None:
            raise ValidationError(
                code="VALIDATION_ERROR",
                message=f"{self.role} message cannot carry tool_call_id",
            )

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls=()) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


@dataclass(frozen=True)
class ToolResult:
    """工具执行结果：output（成功）与 failure（失败描述）恰好设置其一。"""

    tool_call_id: str
    output: Optional[str] = None
    failure: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.output is None) == (self.failure is None):
            raise ValidationError(
                code="VALIDATION_ERROR",
                message="ToolResult requires exactly one of output/failure",
            )

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def content(self) -> str:
        """写入 tool 消息的文本。"""

        return self.output if self.output is not None else self.failure  # type: ignore[return-value]

    def to_message(self) -> Message:
        return Message.tool(self.content, self.tool_call_id)


@dataclass(frozen=True)
class ToolCallFragment:
    """流式返回中某个工具调用的一个片段。

    部分 Provider 会把同一个调用的 name/arguments 拆到多个片段里，
    靠 index（缺省时靠 id）把它们归并到同一个调用上。
    """

    index: Optional[int] = None
    id: Optional[str] = None
    name_fragment: str = ""
    args_fragment: str = ""


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class MessageDelta:
    """Model Adapter 产出的一条增量：零或多个内容字符 + 零或多个工具调用片段。"""

    content: str = ""
    tool_call_fragments: Tuple[ToolCallFragment, ...] = ()
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)
