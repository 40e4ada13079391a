"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于 Orchestrator 统一捕获并降级为面向用户的提示文本。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TOOL_NOT_FOUND"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 query_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class NotFoundError(BusinessError):
    """请求的工具或收敛请求不存在。"""


class TimeoutExceededError(BusinessError):
    """工具或 Provider 调用超出时间预算。"""


class ProviderUnavailableError(BusinessError):
    """没有任何可用（已配置）的 Provider。"""


class RoutingAmbiguityError(BusinessError):
    """分类器返回的工具名无法匹配任何已索引工具，路由器内部会回退到默认工具。"""


class SystemNotReadyError(BusinessError):
    """系统尚未初始化或已被禁用。"""


class ConfigurationError(BusinessError):
    """启动期致命配置错误：既没有 Provider 也没有离线兜底。"""
