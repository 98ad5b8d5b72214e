"""只追加的对话历史。"""

from typing import Iterable, Iterator, List, Optional, Set, Tuple

from chatloop_core.domain.exceptions import HistoryInvariantError
from chatloop_core.domain.models import Message, ToolCall


class MessageHistory:
    """有序、只追加的消息记录。

    不变式：
    - 至多一条 system 消息，且只能是第一条。
    - tool 消息的 tool_call_id 必须命中最近一条 assistant 消息中的某个 ToolCall，
      同一个调用只能被回答一次。
    - 没有删除或修改接口；Message 本身是 frozen 的。
    """

    def __init__(self, initial: Optional[Iterable[Message]] = None):
        self._messages: List[Message] = []
        self._last_assistant: Optional[Message] = None
        self._answered: Set[str] = set()
        for message in initial or ():
            self.append(message)

    def append(self, message: Message) -> None:
        if message.role == "system" and self._messages:
            raise HistoryInvariantError(
                code="HISTORY_INVARIANT",
                message="system message must be the first message",
            )
        if message.role == "tool":
            self._check_tool_reference(message)
        self._messages.append(message)
        if message.role == "assistant":
            self._last_assistant = message
            self._answered = set()
        elif message.role == "tool":
            self._answered.add(message.tool_call_id or "")

    def _check_tool_reference(self, message: Message) -> None:
        if self._last_assistant is None:
            raise HistoryInvariantError(
                code="HISTORY_INVARIANT",
                message="tool message without a preceding assistant message",
                tool_call_id=message.tool_call_id,
            )
        known = {call.id for call in self._last_assistant.tool_calls}
        if message.tool_call_id not in known:
            raise HistoryInvariantError(
                code="HISTORY_INVARIANT",
                message=f"tool_call_id {message.tool_call_id!r} does not match the last assistant message",
                tool_call_id=message.tool_call_id,
            )
        if message.tool_call_id in self._answered:
            raise HistoryInvariantError(
                code="HISTORY_INVARIANT",
                message=f"tool_call_id {message.tool_call_id!r} already answered",
                tool_call_id=message.tool_call_id,
            )

    def snapshot(self) -> Tuple[Message, ...]:
        """交给 Model Adapter 的有序快照。"""

        return tuple(self._messages)

    def last_assistant(self) -> Optional[Message]:
        return self._last_assistant

    def unanswered(self) -> Tuple[ToolCall, ...]:
        """最近一条 assistant 消息中尚未得到 tool 回复的调用，按模型给出的顺序。"""

        if self._last_assistant is None:
            return ()
        return tuple(call for call in self._last_assistant.tool_calls if call.id not in self._answered)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
