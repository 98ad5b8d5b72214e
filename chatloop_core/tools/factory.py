"""根据 config.yaml 中的声明构造可执行工具。

支持的类型：
- customexec: 以模板渲染命令行并在子进程中执行。
- customhttp: 以模板渲染 URL / 请求头 / 请求体并发起 HTTP 请求。
- httprequest: 通用 HTTP 工具，由模型直接给出 url / method / body。
- commandline / sequentialthinking: 内置工具，见 tools.builtin。

模板使用 ``string.Template`` 语法（``${city}``），缺失的参数保留原样。
"""

import os
import shlex
import subprocess
from string import Template
from typing import Any, Dict, Iterable, List, Optional

import httpx

from chatloop_core.config.settings import ToolConfig
from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.exceptions import ToolExecutionError, ValidationError
from .builtin import build_commandline_tool, build_sequentialthinking_tool
from .definitions import Tool, ToolDef, param
from .dispatcher import LocalToolDispatcher

DEFAULT_TIMEOUT = 30.0


def _render(template: str, args: Dict[str, Any]) -> str:
    values = {k: "" if v is None else str(v) for k, v in args.items()}
    return Template(template).safe_substitute(values)


def _timeout(cfg: Dict[str, Any], ctx: TurnContext) -> float:
    timeout = float(cfg.get("timeout") or DEFAULT_TIMEOUT)
    remaining = ctx.remaining()
    return min(timeout, remaining) if remaining is not None else timeout


def _definition(name: str, tool_cfg: ToolConfig) -> ToolDef:
    params = {
        p.name: param(p.name, p.type, p.description, p.required)
        for p in tool_cfg.params
    }
    return ToolDef(name=name, description=tool_cfg.description or name, params=params)


def _build_exec(name: str, tool_cfg: ToolConfig) -> Tool:
    cfg = tool_cfg.config
    # command / cwd 作为 cmd / workdir 的别名
    command = cfg.get("cmd") or cfg.get("command")
    if not command:
        raise ValidationError(code="INVALID_TOOL_CONFIG", message=f"tool '{name}': customexec requires 'cmd'")
    workdir = cfg.get("workdir") or cfg.get("cwd")
    if workdir:
        workdir = os.path.expanduser(str(workdir))

    def run(ctx: TurnContext, args: Dict[str, Any]) -> str:
        rendered = _render(str(command), args)
        argv = shlex.split(rendered)
        env = None
        if cfg.get("env"):
            env = {**os.environ, **{k: _render(str(v), args) for k, v in cfg["env"].items()}}
        try:
            proc = subprocess.run(
                argv,
                cwd=workdir or None,
                env=env,
                capture_output=True,
                text=True,
                timeout=_timeout(cfg, ctx),
            )
        except subprocess.TimeoutExpired:
            raise ToolExecutionError(code="TOOL_TIMEOUT", message=f"command timed out: {rendered}")
        except OSError as exc:
            raise ToolExecutionError(code="TOOL_EXECUTION_ERROR", message=f"failed to run command: {exc}")

        stdout = proc.stdout.strip()
        stderr = proc.stderr.strip()
        if proc.returncode != 0:
            detail = stderr or stdout or "no output"
            raise ToolExecutionError(
                code="TOOL_EXECUTION_ERROR",
                message=f"command exited with status {proc.returncode}: {detail}",
            )
        if stderr:
            return f"{stdout}\n[warning] {stderr}"
        return stdout

    return Tool(definition=_definition(name, tool_cfg), func=run)


def _send(ctx: TurnContext, cfg: Dict[str, Any], method: str, url: str,
          headers: Dict[str, str], body: Optional[str]) -> str:
    try:
        with httpx.Client(timeout=_timeout(cfg, ctx), trust_env=False) as client:
            resp = client.request(method, url, headers=headers, content=body)
    except httpx.RequestError as exc:
        raise ToolExecutionError(code="TOOL_EXECUTION_ERROR", message=f"request failed: {exc}")
    if resp.status_code >= 400:
        raise ToolExecutionError(
            code="TOOL_EXECUTION_ERROR",
            message=f"HTTP {resp.status_code}: {resp.text}",
            http_status=resp.status_code,
        )
    return resp.text


def _build_http(name: str, tool_cfg: ToolConfig) -> Tool:
    cfg = tool_cfg.config
    url = cfg.get("url")
    if not url:
        raise ValidationError(code="INVALID_TOOL_CONFIG", message=f"tool '{name}': customhttp requires 'url'")
    method = str(cfg.get("method") or "GET").upper()

    def run(ctx: TurnContext, args: Dict[str, Any]) -> str:
        headers = {k: _render(str(v), args) for k, v in (cfg.get("headers") or {}).items()}
        body = _render(str(cfg["body"]), args) if cfg.get("body") else None
        return _send(ctx, cfg, method, _render(str(url), args), headers, body)

    return Tool(definition=_definition(name, tool_cfg), func=run)


def _build_httprequest(name: str, tool_cfg: ToolConfig) -> Tool:
    cfg = tool_cfg.config

    def run(ctx: TurnContext, args: Dict[str, Any]) -> str:
        url = args.get("url")
        if not url:
            raise ToolExecutionError(code="TOOL_EXECUTION_ERROR", message="missing required argument 'url'")
        method = str(args.get("method") or "GET").upper()
        if method not in ("GET", "POST"):
            raise ToolExecutionError(code="TOOL_EXECUTION_ERROR", message=f"unsupported method: {method}")
        headers = {"Content-Type": "application/json"} if method == "POST" else {}
        body = args.get("body") if method == "POST" else None
        return _send(ctx, cfg, method, str(url), headers, None if body is None else str(body))

    definition = ToolDef(
        name=name,
        description=tool_cfg.description or "Send an HTTP GET or POST request and return the response body",
        params={
            "url": param("url", "string", "request URL", required=True),
            "method": param("method", "string", "GET or POST, defaults to GET"),
            "body": param("body", "string", "request body for POST"),
        },
    )
    return Tool(definition=definition, func=run)


_BUILDERS = {
    "customexec": _build_exec,
    "customhttp": _build_http,
    "httprequest": _build_httprequest,
    "commandline": build_commandline_tool,
    "sequentialthinking": build_sequentialthinking_tool,
}


def build_tool(name: str, tool_cfg: ToolConfig) -> Tool:
    builder = _BUILDERS.get(tool_cfg.type.lower())
    if builder is None:
        raise ValidationError(
            code="UNKNOWN_TOOL_TYPE",
            message=f"tool '{name}': unknown type '{tool_cfg.type}'",
        )
    return builder(name, tool_cfg)


def build_tools(configs: Dict[str, ToolConfig]) -> List[Tool]:
    return [build_tool(name, cfg) for name, cfg in configs.items()]


def build_dispatcher(configs: Dict[str, ToolConfig], extra: Iterable[Tool] = (),
                     timeout: Optional[float] = None) -> LocalToolDispatcher:
    """由配置声明的工具与代码注册的工具一起构造 Dispatcher。"""

    return LocalToolDispatcher([*build_tools(configs), *extra], timeout=timeout)
