from dataclasses import dataclass, field
from typing import Literal, Optional

from .history import MessageHistory


TurnStatus = Literal["idle", "streaming", "dispatching", "done", "error"]

# 一轮对话只能从这些状态开始
STARTABLE: tuple = ("idle", "done", "error")

_TRANSITIONS = {
    "idle": {"streaming"},
    "done": {"streaming"},
    "error": {"streaming"},
    "streaming": {"streaming", "dispatching", "done", "error"},
    "dispatching": {"streaming", "error"},
}


@dataclass
class ConversationState:
    """单个会话的状态，由一个 ConversationEngine 独占。"""

    history: MessageHistory = field(default_factory=MessageHistory)
    iteration: int = 0
    status: TurnStatus = "idle"
    last_error: Optional[str] = None

    def transition(self, status: TurnStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise RuntimeError(f"illegal status transition {self.status} -> {status}")
        self.status = status

    @property
    def running(self) -> bool:
        return self.status not in STARTABLE

    def fail(self, reason: str) -> None:
        """任何状态下都可以失败结束。"""

        self.status = "error"
        self.last_error = reason
