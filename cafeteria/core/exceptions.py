"""
自定义异常类
提供更精确的错误处理和异常信息

每个异常带有稳定的 error_code，供 error_handler 映射 HTTP 状态码，
details 中放置调用方可以直接展示或重试所需的数据。
"""

from typing import Any, Dict, List, Optional


class BaseApplicationError(Exception):
    """应用基础异常类"""

    default_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Dict[str, Any] = None
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BaseApplicationError):
    """数据验证异常（用户需修改输入）"""
    default_code = "VALIDATION_ERROR"


class AuthenticationError(BaseApplicationError):
    """认证相关异常"""
    default_code = "AUTHENTICATION_REQUIRED"


class PermissionDeniedError(BaseApplicationError):
    """权限拒绝错误"""
    default_code = "PERMISSION_DENIED"


class PersistenceError(BaseApplicationError):
    """存储层异常，提示用户稍后重试"""
    default_code = "PERSISTENCE_ERROR"


class ConcurrencyError(BaseApplicationError):
    """并发控制错误：订单版本号不匹配"""
    default_code = "CONCURRENT_MODIFICATION"


class BusinessLogicError(BaseApplicationError):
    """业务逻辑异常"""
    default_code = "BUSINESS_RULE_VIOLATION"


class OrderNotFoundError(BusinessLogicError):
    """订单不存在异常"""
    default_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: Optional[str] = None, message: str = "order not found"):
        details = {"order_id": order_id} if order_id else {}
        super().__init__(message, details=details)


class DuplicateSelectionError(BusinessLogicError):
    """重复支付异常：候选选择与已支付订单的同一餐位冲突"""
    default_code = "DUPLICATE_SELECTION"

    def __init__(self, conflicts: List[Any]):
        self.conflicts = list(conflicts)
        lines = [c.describe() for c in self.conflicts]
        message = "selection would pay again for already paid items: " + "; ".join(lines)
        super().__init__(
            message,
            details={"conflicts": [c.to_dict() for c in self.conflicts]}
        )


class InvalidTransitionError(BusinessLogicError):
    """订单状态流转非法"""
    default_code = "ORDER_STATUS_TRANSITION_INVALID"


class ReconcileTooEarlyError(BusinessLogicError):
    """手动对账过早，网关回调可能仍在途中"""
    default_code = "RECONCILE_TOO_EARLY"


class GatewayError(BaseApplicationError):
    """支付网关异常（网络失败或网关拒绝请求）"""
    default_code = "PAYMENT_GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
        details: Dict[str, Any] = None
    ):
        self.retryable = retryable
        self.status_code = status_code
        merged = {"retryable": retryable}
        if status_code is not None:
            merged["gateway_status"] = status_code
        merged.update(details or {})
        super().__init__(message, details=merged)


class InvalidCallbackError(BaseApplicationError):
    """网关回调格式错误或签名校验失败，不修改任何订单"""
    default_code = "INVALID_CALLBACK"
