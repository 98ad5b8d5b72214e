import json
import sys
import threading
import time

import pytest

from chatloop_core.config.settings import ToolConfig, ToolParamConfig
from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    TurnCancelled,
    ValidationError,
)
from chatloop_core.tools.definitions import Tool, ToolDef, param
from chatloop_core.tools.dispatcher import LocalToolDispatcher
from chatloop_core.tools.factory import build_dispatcher, build_tool


def echo_tool(name="echo"):
    return Tool(
        definition=ToolDef(name=name, description="echo", params={"text": param("text", required=True)}),
        func=lambda ctx, args: f"echo:{args.get('text', '')}",
    )


def test_dispatcher_resolve_and_invoke():
    d = LocalToolDispatcher([echo_tool()])
    assert d.resolve("echo")
    assert not d.resolve("nope")
    assert d.invoke(TurnContext(), "echo", '{"text": "hi"}') == "echo:hi"
    assert d.invoke(TurnContext(), "echo", "") == "echo:"
    assert [t.name for t in d.definitions()] == ["echo"]


def test_dispatcher_errors():
    d = LocalToolDispatcher([echo_tool()])
    with pytest.raises(ToolNotFoundError) as exc:
        d.invoke(TurnContext(), "nope", "{}")
    assert exc.value.message == "tool 'nope' does not exist"
    with pytest.raises(ToolExecutionError):
        d.invoke(TurnContext(), "echo", "{not json")
    with pytest.raises(ToolExecutionError):
        d.invoke(TurnContext(), "echo", "[1, 2]")
    with pytest.raises(ValidationError):
        d.register(echo_tool())


def test_dispatcher_wraps_tool_exceptions():
    def broken(ctx, args):
        raise KeyError("missing")

    d = LocalToolDispatcher([Tool(ToolDef("broken", "b"), broken)])
    with pytest.raises(ToolExecutionError) as exc:
        d.invoke(TurnContext(), "broken", "{}")
    assert isinstance(exc.value.__cause__, KeyError)


def test_dispatcher_timeout():
    def sleepy(ctx, args):
        time.sleep(1)
        return "late"

    d = LocalToolDispatcher([Tool(ToolDef("sleepy", "s"), sleepy)], timeout=0.1)
    with pytest.raises(ToolExecutionError) as exc:
        d.invoke(TurnContext(), "sleepy", "{}")
    assert exc.value.code == "TOOL_TIMEOUT"


def test_dispatcher_observes_cancellation():
    ctx = TurnContext()
    started = threading.Event()

    def waiting(tool_ctx, args):
        started.set()
        tool_ctx.wait(5)
        return "late"

    d = LocalToolDispatcher([Tool(ToolDef("waiting", "w"), waiting)])
    threading.Thread(target=lambda: started.wait(5) and ctx.cancel(), daemon=True).start()
    with pytest.raises(TurnCancelled):
        d.invoke(ctx, "waiting", "{}")
    with pytest.raises(TurnCancelled):
        d.invoke(ctx, "waiting", "{}")


def test_dispatcher_subset():
    d = LocalToolDispatcher([echo_tool("a"), echo_tool("b")])
    sub = d.subset(["b"])
    assert sub.names() == ["b"]
    assert d.names() == ["a", "b"]
    with pytest.raises(ValidationError):
        d.subset(["c"])


def py_command(code):
    return f'"{sys.executable}" -c "{code}"'


def test_customexec_renders_template():
    cfg = ToolConfig(
        type="customexec",
        description="greet",
        config={"cmd": py_command("import sys; print('hello ' + sys.argv[1])") + " ${name}"},
        params=[ToolParamConfig(name="name", required=True)],
    )
    tool = build_tool("greet", cfg)
    assert tool.definition.params["name"].required
    assert tool.func(TurnContext(), {"name": "Ada"}) == "hello Ada"


def test_customexec_nonzero_exit_and_warning():
    failing = build_tool("fail", ToolConfig(
        type="customexec",
        config={"cmd": py_command("import sys; sys.stderr.write('bad input'); sys.exit(3)")},
    ))
    with pytest.raises(ToolExecutionError) as exc:
        failing.func(TurnContext(), {})
    assert "status 3" in exc.value.message
    assert "bad input" in exc.value.message

    warning = build_tool("warn", ToolConfig(
        type="customexec",
        config={"cmd": py_command("import sys; print('ok'); sys.stderr.write('careful')")},
    ))
    assert warning.func(TurnContext(), {}) == "ok\n[warning] careful"


class FakeResponse:
    def __init__(self, status_code, text):
        self.status_code = status_code
        self.text = text


def fake_httpx_client(captured, status_code=200, text="ok"):
    class Client:
        def __init__(self, *a, **kw):
            captured["timeout"] = kw.get("timeout")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def request(self, method, url, headers=None, content=None):
            captured.update(method=method, url=url, headers=headers, content=content)
            return FakeResponse(status_code, text)

    return Client


def test_customhttp_renders_url_headers_and_body(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", fake_httpx_client(captured, text="Paris: +22C"))
    tool = build_tool("weather_api", ToolConfig(
        type="customhttp",
        description="weather",
        config={
            "url": "https://wttr.in/${city}?format=3",
            "method": "post",
            "headers": {"X-City": "${city}"},
            "body": '{"q": "${city}"}',
            "timeout": 5,
        },
        params=[ToolParamConfig(name="city", required=True)],
    ))
    assert tool.func(TurnContext(), {"city": "Paris"}) == "Paris: +22C"
    assert captured["method"] == "POST"
    assert captured["url"] == "https://wttr.in/Paris?format=3"
    assert captured["headers"] == {"X-City": "Paris"}
    assert captured["content"] == '{"q": "Paris"}'
    assert captured["timeout"] == 5


def test_customhttp_error_status(monkeypatch):
    monkeypatch.setattr("httpx.Client", fake_httpx_client({}, status_code=503, text="down"))
    tool = build_tool("api", ToolConfig(type="customhttp", config={"url": "https://example.com"}))
    with pytest.raises(ToolExecutionError) as exc:
        tool.func(TurnContext(), {})
    assert "503" in exc.value.message


def test_httprequest_tool(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", fake_httpx_client(captured, text="body"))
    tool = build_tool("http", ToolConfig(type="httprequest"))
    assert set(tool.definition.params) == {"url", "method", "body"}
    assert tool.func(TurnContext(), {"url": "https://example.com"}) == "body"
    assert captured["method"] == "GET"
    with pytest.raises(ToolExecutionError):
        tool.func(TurnContext(), {"url": "https://example.com", "method": "DELETE"})
    with pytest.raises(ToolExecutionError):
        tool.func(TurnContext(), {})


def test_factory_rejects_bad_config():
    with pytest.raises(ValidationError):
        build_tool("x", ToolConfig(type="mcp"))
    with pytest.raises(ValidationError):
        build_tool("x", ToolConfig(type="customexec"))
    d = build_dispatcher({"http": ToolConfig(type="httprequest")}, extra=[echo_tool()])
    assert d.names() == ["http", "echo"]


def test_customexec_workdir_expands_home(tmp_path, monkeypatch):
    (tmp_path / "work").mkdir()
    monkeypatch.setenv("HOME", str(tmp_path))
    tool = build_tool("pwd", ToolConfig(
        type="customexec",
        config={"cmd": py_command("import os; print(os.getcwd())"), "workdir": "~/work"},
    ))
    assert tool.func(TurnContext(), {}) == str((tmp_path / "work").resolve())


def test_customexec_accepts_command_alias():
    tool = build_tool("hi", ToolConfig(type="customexec", config={"command": py_command("print('hi')")}))
    assert tool.func(TurnContext(), {}) == "hi"


def test_commandline_editor(tmp_path):
    tool = build_tool("editor", ToolConfig(type="commandline", config={"root": str(tmp_path)}))
    ctx = TurnContext()
    assert set(tool.definition.params) >= {"command", "path", "file_text", "old_str", "new_str", "insert_line"}

    assert "created" in tool.func(ctx, {"command": "create", "path": "notes/a.txt", "file_text": "one\ntwo\n"})
    assert (tmp_path / "notes" / "a.txt").read_text(encoding="utf-8") == "one\ntwo\n"

    tool.func(ctx, {"command": "str_replace", "path": "notes/a.txt", "old_str": "two", "new_str": "2"})
    tool.func(ctx, {"command": "insert", "path": "notes/a.txt", "insert_line": 0, "new_str": "zero"})
    assert tool.func(ctx, {"command": "view", "path": "notes/a.txt"}) == "     1\tzero\n     2\tone\n     3\t2"
    assert tool.func(ctx, {"command": "view", "path": "notes/a.txt", "view_range": [2, -1]}) == "     2\tone\n     3\t2"
    assert tool.func(ctx, {"command": "view", "path": "."}) == "notes/\nnotes/a.txt"


def test_commandline_editor_errors(tmp_path):
    tool = build_tool("editor", ToolConfig(type="commandline", config={"root": str(tmp_path)}))
    ctx = TurnContext()
    (tmp_path / "dup.txt").write_text("x x", encoding="utf-8")

    with pytest.raises(ToolExecutionError) as exc:
        tool.func(ctx, {"command": "str_replace", "path": "dup.txt", "old_str": "x", "new_str": "y"})
    assert "2 times" in exc.value.message
    with pytest.raises(ToolExecutionError) as exc:
        tool.func(ctx, {"command": "view", "path": "../outside.txt"})
    assert "outside the workspace" in exc.value.message
    with pytest.raises(ToolExecutionError):
        tool.func(ctx, {"command": "delete", "path": "dup.txt"})
    with pytest.raises(ToolExecutionError):
        tool.func(ctx, {"command": "insert", "path": "dup.txt", "insert_line": 5, "new_str": "y"})
    assert (tmp_path / "dup.txt").read_text(encoding="utf-8") == "x x"


def test_sequentialthinking_tracks_history_and_branches():
    tool = build_tool("think", ToolConfig(type="sequentialthinking"))
    ctx = TurnContext()
    first = json.loads(tool.func(ctx, {
        "thought": "split the problem", "thoughtNumber": 1, "totalThoughts": 2, "nextThoughtNeeded": True,
    }))
    assert first == {
        "thoughtNumber": 1, "totalThoughts": 2, "nextThoughtNeeded": True,
        "branches": [], "thoughtHistoryLength": 1,
    }

    third = json.loads(tool.func(ctx, {
        "thought": "try another angle", "thoughtNumber": 3, "totalThoughts": 2, "nextThoughtNeeded": False,
        "branchFromThought": 1, "branchId": "alt",
    }))
    # 超出预估时总数随之上调
    assert third["totalThoughts"] == 3
    assert third["branches"] == ["alt"]
    assert third["thoughtHistoryLength"] == 2

    with pytest.raises(ToolExecutionError):
        tool.func(ctx, {"thought": "", "thoughtNumber": 1, "totalThoughts": 1, "nextThoughtNeeded": False})
    with pytest.raises(ToolExecutionError):
        tool.func(ctx, {"thought": "x", "thoughtNumber": "one", "totalThoughts": 1, "nextThoughtNeeded": False})
