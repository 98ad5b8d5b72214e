"""流式工具调用片段的归并。"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from chatloop_core.domain.models import ToolCall, ToolCallFragment


@dataclass
class _PendingCall:
    id: str = ""
    name: List[str] = field(default_factory=list)
    args: List[str] = field(default_factory=list)


class ToolCallAccumulator:
    """把同一调用的多个片段拼接成完整的 ToolCall。

    片段优先按 index 归并，没有 index 时按 id；两者都缺失的片段
    视为最近一个调用的续写。调用只在流结束后由 finalize() 产出，
    顺序为各调用首次出现的顺序。
    """

    def __init__(self) -> None:
        self._order: List[_PendingCall] = []
        self._by_index: Dict[int, _PendingCall] = {}
        self._by_id: Dict[str, _PendingCall] = {}

    def add(self, fragment: ToolCallFragment) -> None:
        pending = self._locate(fragment)
        if fragment.id and not pending.id:
            pending.id = fragment.id
            self._by_id.setdefault(fragment.id, pending)
        if fragment.name_fragment:
            pending.name.append(fragment.name_fragment)
        if fragment.args_fragment:
            pending.args.append(fragment.args_fragment)

    def _locate(self, fragment: ToolCallFragment) -> _PendingCall:
        if fragment.index is not None:
            pending = self._by_index.get(fragment.index)
            if pending is None:
                pending = self._new()
                self._by_index[fragment.index] = pending
            return pending
        if fragment.id:
            pending = self._by_id.get(fragment.id)
            if pending is None:
                pending = self._new()
                pending.id = fragment.id
                self._by_id[fragment.id] = pending
            return pending
        if self._order:
            return self._order[-1]
        return self._new()

    def _new(self) -> _PendingCall:
        pending = _PendingCall()
        self._order.append(pending)
        return pending

    def __bool__(self) -> bool:
        return bool(self._order)

    def finalize(self) -> Tuple[ToolCall, ...]:
        calls = []
        seen = set()
        for position, pending in enumerate(self._order):
            call_id = pending.id
            # 厂商未给 id（或 id 重复）时按位置补一个，保证 tool 消息可以回指
            if not call_id or call_id in seen:
                call_id = f"tool_call_{position}"
                while call_id in seen:
                    call_id += "_"
            seen.add(call_id)
            calls.append(ToolCall(id=call_id, name="".join(pending.name), arguments="".join(pending.args)))
        return tuple(calls)
