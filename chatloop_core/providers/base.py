"""Model Adapter 抽象接口。

引擎不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每类厂商 API 实现一个 Adapter（如 OpenAICompatibleClient）。
- 负责：把 Message 历史转成厂商请求，并把流式响应解析为 MessageDelta 序列。

这样可以在不改引擎代码的前提下接入更多厂商，测试里也可以用脚本化的假 Adapter。
"""

from typing import Iterator, Protocol, Sequence

from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.models import Message, MessageDelta


class ModelStreamAdapter(Protocol):
    """LLM 流式适配器协议。

    - name: Provider 名称，用于日志。
    - stream(ctx, messages): 基于完整消息历史发起一次生成，逐步产出 MessageDelta。
      失败时抛出 ModelStreamError；重试/退避（如有）在 Adapter 内部完成。
      应当观察 ctx 并在被取消后尽快停止。
    """

    name: str

    def stream(self, ctx: TurnContext, messages: Sequence[Message]) -> Iterator[MessageDelta]:
        ...
