"""工具数据结构定义。

这些 dataclass 描述了“工具”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam，由 Provider 转换为厂商格式）。
- 在 LocalToolDispatcher 中注册可执行的工具（Tool）。

模型发起的调用（ToolCall）及其结果（ToolResult）属于领域模型，见 domain.models。
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from chatloop_core.domain.context import TurnContext


# 工具函数签名：(ctx, 解析后的参数) -> 结果文本；失败时直接抛异常
ToolFunc = Callable[[TurnContext, Dict[str, Any]], str]

JSON_TYPES = {"string", "number", "integer", "boolean", "array", "object"}


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)


@dataclass
class Tool:
    """已注册的可执行工具：定义 + 实现。"""

    definition: ToolDef
    func: ToolFunc

    @property
    def name(self) -> str:
        return self.definition.name


def param(name: str, type_: str = "string", description: str = "", required: bool = False) -> ToolParam:
    """按简单类型名构造 ToolParam，未知类型按 string 处理。"""

    json_type = type_ if type_ in JSON_TYPES else "string"
    return ToolParam(name=name, description=description, required=required, schema={"type": json_type})
