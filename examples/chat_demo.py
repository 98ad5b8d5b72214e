"""Minimal console demo: one session, events printed as they stream."""

import sys

from chatloop_core.agents.sinks import CallbackEventSink
from chatloop_core.api.service import SessionService
from chatloop_core.domain.events import ContentDelta, ToolCompleted, ToolFailed, ToolInvoked, TurnError


def render(event):
    if isinstance(event, ContentDelta):
        sys.stdout.write(event.text)
    elif isinstance(event, ToolInvoked):
        print(f"\n[工具] 正在调用 {event.name} 参数: {event.arguments}")
    elif isinstance(event, ToolCompleted):
        print(f"[工具] {event.name} 执行完成: {event.result}")
    elif isinstance(event, ToolFailed):
        print(f"[工具] {event.name} 执行失败: {event.reason}")
    elif isinstance(event, TurnError):
        print(f"\n[错误] {event.error_kind}: {event.reason}")
    else:
        print()
    sys.stdout.flush()


if __name__ == "__main__":
    service = SessionService()
    preset = sys.argv[1] if len(sys.argv) > 1 else None
    session_id = service.create_session(preset)
    while True:
        try:
            question = input("User: ").strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not question:
            continue
        sink = CallbackEventSink(render)
        handle = service.submit(session_id, question, sink=sink)
        try:
            handle.join()
        except KeyboardInterrupt:
            handle.cancel()
            handle.join()
        sink.join()
