"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在引擎、会话服务或 UI 层做统一捕获与用户提示。

按对一轮对话（turn）的影响分为两类：
- 致命（turn-fatal）：ModelStreamError 及其子类、IterationLimitExceeded、TurnCancelled，
  由引擎转换为 TurnError 事件。
- 可恢复（turn-recoverable）：ToolNotFoundError、ToolExecutionError，
  由引擎编码为失败的 ToolResult 回填给模型，不会中断本轮。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TOOL_NOT_FOUND"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class HistoryInvariantError(ValidationError):
    """追加消息违反 MessageHistory 不变式（system 位置、tool_call_id 回指等）。"""


class ModelStreamError(BusinessError):
    """模型流式输出失败：网络、鉴权、流格式错误等。对本轮是致命的，引擎不重试。"""


class NetworkError(ModelStreamError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(ModelStreamError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(ModelStreamError):
    """Provider 限流错误，重试/退避由 Model Adapter 自己负责。"""


class ToolNotFoundError(BusinessError):
    """Dispatcher 无法解析工具名。"""

    def __init__(self, name: str):
        super().__init__(
            code="TOOL_NOT_FOUND",
            message=f"tool '{name}' does not exist",
            tool_name=name,
        )


class ToolExecutionError(BusinessError):
    """工具执行失败（参数解析失败、超时、工具自身抛错）。"""


class IterationLimitExceeded(BusinessError):
    """单轮对话的模型流式轮数超过上限。"""

    def __init__(self, limit: int):
        super().__init__(
            code="ITERATION_LIMIT",
            message="iteration limit reached",
            limit=limit,
        )


class TurnCancelled(BusinessError):
    """本轮对话的 TurnContext 已被取消。"""

    def __init__(self, message: str = "cancelled"):
        super().__init__(code="CANCELLED", message=message)


class TurnInProgressError(BusinessError):
    """同一会话上已有一轮对话在执行，拒绝并发提交。"""

    def __init__(self):
        super().__init__(
            code="TURN_IN_PROGRESS",
            message="a turn is already running on this conversation",
            http_status=409,
        )


class SessionNotFoundError(BusinessError):
    """会话 ID 不存在。"""

    def __init__(self, session_id: str):
        super().__init__(
            code="SESSION_NOT_FOUND",
            message=session_id,
            http_status=404,
        )
