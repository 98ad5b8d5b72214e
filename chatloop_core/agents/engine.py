"""对话引擎核心模块。

实现一轮对话（turn）的完整循环：追加用户消息 -> 流式调用模型 ->
归并工具调用 -> 依次执行工具并回填结果 -> 再次调用模型，直到模型
给出不含工具调用的回答、出错、被取消或达到迭代上限。

过程中的所有可见进展都以 StreamEvent 的形式发往 Event Sink。
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Literal, Optional, Sequence, Tuple
from uuid import uuid4
import logging
import threading
import time

from chatloop_core.agents.accumulator import ToolCallAccumulator
from chatloop_core.agents.formatting import DISPLAY_LIMIT, truncate_arguments, truncate_result
from chatloop_core.agents.sinks import EventSink, FanoutEventSink, QueueEventSink
from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.conversation import ConversationState, TurnStatus
from chatloop_core.domain.events import (
    ContentDelta,
    StreamEvent,
    ToolCompleted,
    ToolFailed,
    ToolInvoked,
    TurnDone,
    TurnError,
)
from chatloop_core.domain.exceptions import (
    BusinessError,
    IterationLimitExceeded,
    ModelStreamError,
    ToolNotFoundError,
    TurnCancelled,
    TurnInProgressError,
)
from chatloop_core.domain.history import MessageHistory
from chatloop_core.domain.models import ChatUsage, Message, ToolCall, ToolResult
from chatloop_core.infrastructure.logging.logger import logger
from chatloop_core.providers.base import ModelStreamAdapter
from chatloop_core.tools.dispatcher import ToolDispatcher


@dataclass
class EngineConfig:
    max_iterations: int = 10  # 单轮内模型流式轮数上限
    tool_failure_policy: Literal["continue", "abort"] = "continue"
    parallel_tools: bool = False
    max_parallel_tools: int = 4
    display_limit: int = DISPLAY_LIMIT  # 发往 Sink 的工具结果截断长度

    @classmethod
    def from_settings(cls, settings) -> "EngineConfig":
        return cls(
            max_iterations=settings.max_iterations,
            tool_failure_policy=settings.tool_failure_policy,
            parallel_tools=settings.parallel_tools,
            display_limit=settings.tool_display_limit,
        )


@dataclass(frozen=True)
class EngineState:
    """ConversationState 的只读快照。"""

    status: TurnStatus
    iteration: int
    last_error: Optional[str]
    message_count: int
    running: bool


class TurnHandle:
    """submit_turn 的返回值。

    迭代 handle 得到本轮的全部事件，以唯一的终止事件结束；同一个 handle
    只应有一个消费者。
    """

    def __init__(self, ctx: TurnContext):
        self.ctx = ctx
        self._events = QueueEventSink()
        self._thread: Optional[threading.Thread] = None
        self._terminal: Optional[StreamEvent] = None

    def __iter__(self) -> Iterator[StreamEvent]:
        return self._events.iter_events()

    def events(self, timeout: Optional[float] = None) -> Iterator[StreamEvent]:
        return self._events.iter_events(timeout)

    def cancel(self, reason: str = "cancelled") -> None:
        self.ctx.cancel(reason)

    def join(self, timeout: Optional[float] = None) -> bool:
        """等待工作线程结束，返回是否已结束。"""

        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def terminal(self) -> Optional[StreamEvent]:
        return self._terminal

    @property
    def done(self) -> bool:
        return self._terminal is not None


class ConversationEngine:
    """单个会话的对话引擎，独占该会话的 ConversationState。

    同一个引擎同时只允许一轮对话；不同引擎之间不共享可变状态。
    """

    def __init__(
        self,
        adapter: ModelStreamAdapter,
        dispatcher: ToolDispatcher,
        config: Optional[EngineConfig] = None,
        system_prompt: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self._adapter = adapter
        self._dispatcher = dispatcher
        self._config = config or EngineConfig()
        self._session_id = session_id
        history = MessageHistory([Message.system(system_prompt)] if system_prompt else None)
        self._state = ConversationState(history=history)
        self._lock = threading.Lock()

    @property
    def state(self) -> EngineState:
        return EngineState(
            status=self._state.status,
            iteration=self._state.iteration,
            last_error=self._state.last_error,
            message_count=len(self._state.history),
            running=self._state.running,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    def history(self) -> Tuple[Message, ...]:
        return self._state.history.snapshot()

    def submit_turn(
        self,
        user_text: str,
        ctx: Optional[TurnContext] = None,
        sink: Optional[EventSink] = None,
    ) -> TurnHandle:
        """在独立工作线程中执行一轮对话，立即返回 TurnHandle。

        已有一轮在执行时抛出 TurnInProgressError。
        """

        if not self._lock.acquire(blocking=False):
            raise TurnInProgressError()
        try:
            handle = TurnHandle(ctx or TurnContext())
            target: EventSink = handle._events if sink is None else FanoutEventSink(handle._events, sink)
            thread = threading.Thread(
                target=self._run_locked,
                args=(user_text, target, handle.ctx, handle),
                name=f"turn-{self._session_id or 'engine'}",
                daemon=True,
            )
            handle._thread = thread
            thread.start()
        except BaseException:
            self._lock.release()
            raise
        return handle

    def run_turn(
        self,
        user_text: str,
        sink: EventSink,
        ctx: Optional[TurnContext] = None,
    ) -> StreamEvent:
        """在调用方线程同步执行一轮对话，返回终止事件。"""

        if not self._lock.acquire(blocking=False):
            raise TurnInProgressError()
        return self._run_locked(user_text, sink, ctx or TurnContext(), None)

    def _run_locked(
        self,
        user_text: str,
        sink: EventSink,
        ctx: TurnContext,
        handle: Optional[TurnHandle],
    ) -> StreamEvent:
        """执行一轮并保证恰好发出一个终止事件。

        终止事件在释放锁之后才发出，消费者收到它后即可提交下一轮。
        """

        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "provider": getattr(self._adapter, "name", None),
        }
        if self._session_id:
            log_ctx["session_id"] = self._session_id
        try:
            terminal = self._run_turn(user_text, sink, ctx, log_ctx)
        finally:
            self._lock.release()
        if handle is not None:
            handle._terminal = terminal
        self._log(
            logging.INFO if isinstance(terminal, TurnDone) else logging.WARNING,
            "Turn finished",
            log_ctx,
            outcome=terminal.kind,
            error_kind=getattr(terminal, "error_kind", None),
            iteration=self._state.iteration,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        sink.emit(terminal)
        return terminal

    def _run_turn(self, user_text: str, sink: EventSink, ctx: TurnContext, log_ctx: Dict[str, Any]) -> StreamEvent:
        try:
            return self._loop(user_text, sink, ctx, log_ctx)
        except TurnCancelled:
            self._answer_pending("cancelled")
            self._state.fail("cancelled")
            self._log(logging.INFO, "Turn cancelled", log_ctx, reason=ctx.reason)
            return TurnError("cancelled", error_kind="cancelled")
        except IterationLimitExceeded as e:
            self._state.fail(e.message)
            self._log(logging.WARNING, "Iteration limit reached", log_ctx, limit=self._config.max_iterations)
            return TurnError(e.message, error_kind="iteration_limit")
        except ModelStreamError as e:
            self._state.fail(e.message)
            self._log(logging.ERROR, "Model stream failed", log_ctx, code=e.code, error=e.message)
            return TurnError(e.message, error_kind="model_stream")
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._state.fail(reason)
            logger.exception("Turn failed unexpectedly", extra={"extra": dict(log_ctx)})
            return TurnError(reason, error_kind="internal")

    def _loop(self, user_text: str, sink: EventSink, ctx: TurnContext, log_ctx: Dict[str, Any]) -> StreamEvent:
        state = self._state
        state.history.append(Message.user(user_text))
        state.iteration = 0
        state.last_error = None
        self._log(logging.INFO, "Turn started", log_ctx, history_length=len(state.history))

        while True:
            if state.iteration >= self._config.max_iterations:
                raise IterationLimitExceeded(self._config.max_iterations)
            state.iteration += 1
            state.transition("streaming")
            content, calls = self._stream_round(ctx, sink, log_ctx)

            if not calls:
                state.history.append(Message.assistant(content))
                state.transition("done")
                return TurnDone(content)

            state.history.append(Message.assistant(content, calls))
            state.transition("dispatching")
            self._log(
                logging.INFO,
                "Model requested tools",
                log_ctx,
                iteration=state.iteration,
                tools=[call.name for call in calls],
            )
            if self._config.parallel_tools and len(calls) > 1:
                failure = self._dispatch_parallel(ctx, sink, calls, log_ctx)
            else:
                failure = self._dispatch_sequential(ctx, sink, calls, log_ctx)
            if failure is not None:
                self._answer_pending("skipped: turn aborted")
                state.fail(failure)
                return TurnError(failure, error_kind="tool_failure")

    def _stream_round(
        self,
        ctx: TurnContext,
        sink: EventSink,
        log_ctx: Dict[str, Any],
    ) -> Tuple[str, Tuple[ToolCall, ...]]:
        """一轮模型流式输出：转发内容增量，归并工具调用片段。"""

        ctx.raise_if_cancelled()
        buffer: List[str] = []
        acc = ToolCallAccumulator()
        usage: Optional[ChatUsage] = None
        self._log(logging.DEBUG, "Streaming round", log_ctx, iteration=self._state.iteration)
        stream = None
        try:
            stream = self._adapter.stream(ctx, self._state.history.snapshot())
            for delta in stream:
                ctx.raise_if_cancelled()
                if delta.content:
                    buffer.append(delta.content)
                    sink.emit(ContentDelta(delta.content))
                for fragment in delta.tool_call_fragments:
                    acc.add(fragment)
                if delta.usage is not None:
                    usage = delta.usage
        except (TurnCancelled, ModelStreamError):
            raise
        except Exception as e:
            # Adapter 抛出的任何异常对本轮都是致命的
            raise ModelStreamError(code="MODEL_STREAM_ERROR", message=str(e) or type(e).__name__) from e
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        ctx.raise_if_cancelled()

        if usage is not None:
            self._log(
                logging.INFO,
                "Token usage",
                log_ctx,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )
        return "".join(buffer), acc.finalize()

    def _dispatch_sequential(
        self,
        ctx: TurnContext,
        sink: EventSink,
        calls: Sequence[ToolCall],
        log_ctx: Dict[str, Any],
    ) -> Optional[str]:
        """按模型给出的顺序逐个执行工具；abort 策略下返回首个失败原因。"""

        for call in calls:
            ctx.raise_if_cancelled()
            sink.emit(ToolInvoked(call.name, truncate_arguments(call.arguments), call.id))
            result = self._invoke(ctx, call, log_ctx)
            failure = self._record(sink, call, result)
            if failure is not None:
                return failure
            ctx.raise_if_cancelled()
        return None

    def _dispatch_parallel(
        self,
        ctx: TurnContext,
        sink: EventSink,
        calls: Sequence[ToolCall],
        log_ctx: Dict[str, Any],
    ) -> Optional[str]:
        """并发执行同一轮的工具；结果仍按模型顺序回填与发出事件。"""

        ctx.raise_if_cancelled()
        for call in calls:
            sink.emit(ToolInvoked(call.name, truncate_arguments(call.arguments), call.id))
        pool = ThreadPoolExecutor(
            max_workers=max(1, min(len(calls), self._config.max_parallel_tools)),
            thread_name_prefix="tool",
        )
        try:
            futures = [pool.submit(self._invoke, ctx, call, log_ctx) for call in calls]
            for call, future in zip(calls, futures):
                result = future.result()
                failure = self._record(sink, call, result)
                if failure is not None:
                    return failure
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        ctx.raise_if_cancelled()
        return None

    def _answer_pending(self, reason: str) -> None:
        """为未执行的调用回填失败结果，保证下一轮发给模型的历史仍然合法。不发出事件。"""

        for call in self._state.history.unanswered():
            self._state.history.append(ToolResult(tool_call_id=call.id, failure=reason).to_message())

    def _invoke(self, ctx: TurnContext, call: ToolCall, log_ctx: Dict[str, Any]) -> ToolResult:
        """执行单个工具调用并转换为 ToolResult；只有取消会以异常形式传出。"""

        start = time.time()
        if not self._dispatcher.resolve(call.name):
            failure = ToolNotFoundError(call.name).message
        else:
            try:
                output = self._dispatcher.invoke(ctx, call.name, call.arguments)
            except TurnCancelled:
                raise
            except BusinessError as e:
                failure = e.message
            except Exception as e:
                failure = str(e) or type(e).__name__
            else:
                self._log(
                    logging.INFO,
                    "Tool call succeeded",
                    log_ctx,
                    tool=call.name,
                    tool_call_id=call.id,
                    elapsed_seconds=round(time.time() - start, 2),
                )
                return ToolResult(tool_call_id=call.id, output=output)
        self._log(
            logging.WARNING,
            "Tool call failed",
            log_ctx,
            tool=call.name,
            tool_call_id=call.id,
            error=failure,
        )
        return ToolResult(tool_call_id=call.id, failure=failure)

    def _record(self, sink: EventSink, call: ToolCall, result: ToolResult) -> Optional[str]:
        """回填 tool 消息并发出结果事件。历史中保留完整文本，事件里的文本会被截断。"""

        self._state.history.append(result.to_message())
        display = truncate_result(result.content, limit=self._config.display_limit)
        if result.ok:
            sink.emit(ToolCompleted(call.name, display, call.id))
            return None
        sink.emit(ToolFailed(call.name, display, call.id))
        if self._config.tool_failure_policy == "abort":
            return result.failure
        return None

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
