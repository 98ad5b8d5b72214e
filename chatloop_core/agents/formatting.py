"""工具参数与结果的展示截断，只作用于发往 Event Sink 的文本。"""

DISPLAY_LIMIT = 500
ARGUMENTS_LIMIT = 300
MAX_LINES = 10

TRUNCATED_MARKER = "\n... (truncated)"


def truncate_result(text: str, limit: int = DISPLAY_LIMIT, max_lines: int = MAX_LINES) -> str:
    """超过 max_lines 行时保留前 max_lines 行；超过 limit 字符时截到 limit（含 "..."）。"""

    if not text:
        return ""
    lines = text.split("\n")
    if len(lines) > max_lines:
        text = "\n".join(lines[:max_lines]) + TRUNCATED_MARKER
    if len(text) > limit:
        text = text[: max(limit - 3, 0)] + "..."
    return text


def truncate_arguments(text: str, limit: int = ARGUMENTS_LIMIT) -> str:
    if len(text) > limit:
        return text[: max(limit - 3, 0)] + "..."
    return text
