"""无需外部服务的内置工具。

- commandline: 文本文件编辑器（view / create / str_replace / insert），可选 ``root`` 限定可访问目录。
- sequentialthinking: 记录模型的分步思考过程，返回当前进度摘要。
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from chatloop_core.config.settings import ToolConfig
from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.exceptions import ToolExecutionError
from .definitions import Tool, ToolDef, param

MAX_VIEW_ENTRIES = 200
EDITOR_COMMANDS = ("view", "create", "str_replace", "insert")


def _fail(message: str) -> ToolExecutionError:
    return ToolExecutionError(code="TOOL_EXECUTION_ERROR", message=message)


def _is_within_root(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _resolve_path(raw: str, root: Optional[Path]) -> Path:
    text = (raw or "").strip()
    if not text:
        raise _fail("missing required argument 'path'")
    candidate = Path(text).expanduser()
    if not candidate.is_absolute():
        candidate = (root or Path.cwd()) / candidate
    resolved = candidate.resolve()
    if root and not _is_within_root(resolved, root):
        raise _fail(f"path is outside the workspace: {text}")
    return resolved


def _view(path: Path, args: Dict[str, Any]) -> str:
    if path.is_dir():
        entries: List[str] = []
        for child in sorted(path.rglob("*")):
            if any(part.startswith(".") for part in child.relative_to(path).parts):
                continue
            rel = child.relative_to(path)
            if len(rel.parts) > 2:
                continue
            entries.append(f"{rel}/" if child.is_dir() else str(rel))
            if len(entries) >= MAX_VIEW_ENTRIES:
                entries.append("... truncated ...")
                break
        return "\n".join(entries)
    if not path.is_file():
        raise _fail(f"path does not exist: {path}")
    lines = path.read_text(encoding="utf-8").splitlines()
    start, end = 1, len(lines)
    view_range = args.get("view_range")
    if view_range:
        try:
            start, end = int(view_range[0]), int(view_range[1])
        except (TypeError, ValueError, IndexError):
            raise _fail("view_range must be [start, end]")
        if end == -1:
            end = len(lines)
        if start < 1 or end < start or end > len(lines):
            raise _fail(f"invalid view_range {view_range} for a file of {len(lines)} lines")
    return "\n".join(f"{n:6}\t{lines[n - 1]}" for n in range(start, end + 1))


def _create(path: Path, args: Dict[str, Any]) -> str:
    text = args.get("file_text")
    if text is None:
        raise _fail("missing required argument 'file_text'")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(text), encoding="utf-8")
    return f"file created: {path}"


def _str_replace(path: Path, args: Dict[str, Any]) -> str:
    if not path.is_file():
        raise _fail(f"path does not exist: {path}")
    old = args.get("old_str")
    if not old:
        raise _fail("missing required argument 'old_str'")
    new = str(args.get("new_str") or "")
    content = path.read_text(encoding="utf-8")
    occurrences = content.count(old)
    if occurrences == 0:
        raise _fail(f"old_str not found in {path}")
    if occurrences > 1:
        raise _fail(f"old_str occurs {occurrences} times in {path}, it must be unique")
    path.write_text(content.replace(old, new, 1), encoding="utf-8")
    return f"file edited: {path}"


def _insert(path: Path, args: Dict[str, Any]) -> str:
    if not path.is_file():
        raise _fail(f"path does not exist: {path}")
    try:
        line = int(args.get("insert_line"))
    except (TypeError, ValueError):
        raise _fail("insert_line must be an integer")
    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    if line < 0 or line > len(lines):
        raise _fail(f"insert_line {line} is out of range [0, {len(lines)}]")
    new = str(args.get("new_str") or "")
    if not new.endswith("\n"):
        new += "\n"
    if line and not lines[line - 1].endswith("\n"):
        lines[line - 1] += "\n"
    lines[line:line] = [new]
    path.write_text("".join(lines), encoding="utf-8")
    return f"inserted after line {line}: {path}"


def build_commandline_tool(name: str, tool_cfg: ToolConfig) -> Tool:
    raw_root = tool_cfg.config.get("root")
    root = Path(str(raw_root)).expanduser().resolve() if raw_root else None

    def run(ctx: TurnContext, args: Dict[str, Any]) -> str:
        command = str(args.get("command") or "")
        if command not in EDITOR_COMMANDS:
            raise _fail(f"unknown command '{command}', expected one of {', '.join(EDITOR_COMMANDS)}")
        path = _resolve_path(str(args.get("path") or ""), root)
        try:
            if command == "view":
                return _view(path, args)
            if command == "create":
                return _create(path, args)
            if command == "str_replace":
                return _str_replace(path, args)
            return _insert(path, args)
        except (OSError, UnicodeDecodeError) as exc:
            raise _fail(f"{command} failed: {exc}")

    definition = ToolDef(
        name=name,
        description=tool_cfg.description or (
            "View, create and edit text files. `view` shows a file with line numbers or lists a directory; "
            "`create` writes file_text; `str_replace` replaces a unique old_str with new_str; "
            "`insert` adds new_str after insert_line (0 inserts at the top)"
        ),
        params={
            "command": param("command", "string", "one of view, create, str_replace, insert", required=True),
            "path": param("path", "string", "file or directory path", required=True),
            "file_text": param("file_text", "string", "content for create"),
            "old_str": param("old_str", "string", "text to replace for str_replace"),
            "new_str": param("new_str", "string", "replacement for str_replace or text for insert"),
            "insert_line": param("insert_line", "integer", "line after which new_str is inserted"),
            "view_range": param("view_range", "array", "[start, end] lines for view, end -1 means to the end"),
        },
    )
    definition.params["view_range"].schema["items"] = {"type": "integer"}
    return Tool(definition=definition, func=run)


class ThinkingLog:
    """sequentialthinking 的状态：思考记录与分支，工具实例之间互不共享。"""

    def __init__(self):
        self._lock = threading.Lock()
        self.history: List[Dict[str, Any]] = []
        self.branches: Dict[str, List[Dict[str, Any]]] = {}

    def record(self, args: Dict[str, Any]) -> Dict[str, Any]:
        thought = args.get("thought")
        if not thought or not isinstance(thought, str):
            raise _fail("invalid thought: must be a non-empty string")
        try:
            number = int(args.get("thoughtNumber"))
            total = int(args.get("totalThoughts"))
        except (TypeError, ValueError):
            raise _fail("thoughtNumber and totalThoughts must be integers")
        if number < 1 or total < 1:
            raise _fail("thoughtNumber and totalThoughts must be positive")
        next_needed = args.get("nextThoughtNeeded")
        if not isinstance(next_needed, bool):
            raise _fail("nextThoughtNeeded must be a boolean")
        # 思考步数超出预估时自动上调总数
        total = max(total, number)

        entry = dict(args, thoughtNumber=number, totalThoughts=total)
        with self._lock:
            self.history.append(entry)
            branch_id = args.get("branchId")
            if args.get("branchFromThought") and branch_id:
                self.branches.setdefault(str(branch_id), []).append(entry)
            return {
                "thoughtNumber": number,
                "totalThoughts": total,
                "nextThoughtNeeded": next_needed,
                "branches": list(self.branches),
                "thoughtHistoryLength": len(self.history),
            }


def build_sequentialthinking_tool(name: str, tool_cfg: ToolConfig) -> Tool:
    log = ThinkingLog()

    def run(ctx: TurnContext, args: Dict[str, Any]) -> str:
        return json.dumps(log.record(args), ensure_ascii=False)

    definition = ToolDef(
        name=name,
        description=tool_cfg.description or (
            "Think through a problem step by step. Each call records one thought; thoughts can revise "
            "earlier ones or branch from them, and the total can be adjusted as understanding grows"
        ),
        params={
            "thought": param("thought", "string", "the current thinking step", required=True),
            "nextThoughtNeeded": param("nextThoughtNeeded", "boolean", "whether another thought is needed", required=True),
            "thoughtNumber": param("thoughtNumber", "integer", "current thought number, starting at 1", required=True),
            "totalThoughts": param("totalThoughts", "integer", "estimated total thoughts", required=True),
            "isRevision": param("isRevision", "boolean", "whether this revises previous thinking"),
            "revisesThought": param("revisesThought", "integer", "which thought is being reconsidered"),
            "branchFromThought": param("branchFromThought", "integer", "branching point thought number"),
            "branchId": param("branchId", "string", "branch identifier"),
            "needsMoreThoughts": param("needsMoreThoughts", "boolean", "whether more thoughts are needed"),
        },
    )
    return Tool(definition=definition, func=run)
