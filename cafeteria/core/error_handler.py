"""
统一错误处理模块
业务异常按 error_code 映射 HTTP 状态码，所有错误使用同一响应格式：

    {"success": false, "error_code": ..., "message": ..., "details": {...}}
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .exceptions import BaseApplicationError
from .database import db_manager

logger = logging.getLogger(__name__)

# 错误代码 -> HTTP状态码，未列出的业务错误按 400 处理
ERROR_CODE_STATUS_MAP = {
    "VALIDATION_ERROR": 400,
    "AUTHENTICATION_REQUIRED": 401,
    "PERMISSION_DENIED": 403,
    "BUSINESS_RULE_VIOLATION": 422,
    "INTERNAL_ERROR": 500,

    # 订单
    "ORDER_NOT_FOUND": 404,
    "DUPLICATE_SELECTION": 409,
    "ORDER_STATUS_TRANSITION_INVALID": 409,
    "CONCURRENT_MODIFICATION": 409,
    "RECONCILE_TOO_EARLY": 425,

    # 支付
    "PAYMENT_GATEWAY_ERROR": 502,
    "INVALID_CALLBACK": 400,

    # 存储
    "PERSISTENCE_ERROR": 503,
}

# 不向用户暴露原始信息的错误
_PUBLIC_MESSAGES = {
    "PERSISTENCE_ERROR": "temporary storage failure, please try again",
}


def error_payload(error_code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "error_code": error_code,
        "message": message,
        "details": jsonable_encoder(details or {}),
    }


def _error_response(status_code: int, error_code: str, message: str,
                    details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_payload(error_code, message, details))


def status_for(error: BaseApplicationError) -> int:
    """业务异常对应的HTTP状态码"""
    return ERROR_CODE_STATUS_MAP.get(error.error_code, 400)


def _log_system_error(error_details: Dict[str, Any]):
    """系统错误同时写入数据库日志表"""
    try:
        db_manager.write_log("system_error", error_details)
    except BaseApplicationError:
        logger.error("Failed to log error to database: %s", error_details)


async def application_error_handler(request: Request, exc: BaseApplicationError) -> JSONResponse:
    """应用异常处理"""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    message = _PUBLIC_MESSAGES.get(exc.error_code, exc.message)
    return _error_response(status_code, exc.error_code, message, exc.details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, "HTTP_ERROR", str(exc.detail), {"status_code": exc.status_code})


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """请求参数校验失败"""
    errors = exc.errors() if hasattr(exc, "errors") else str(exc)
    return _error_response(422, "VALIDATION_ERROR", "request validation failed", {"validation_errors": errors})


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """未预期的异常：记录后返回 500"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    _log_system_error({"type": type(exc).__name__, "message": str(exc), "path": request.url.path})
    return _error_response(500, "INTERNAL_ERROR", "internal server error", {"error_type": type(exc).__name__})


def create_success_response(data: Any = None, message: str = "ok") -> Dict[str, Any]:
    """创建标准成功响应"""
    response = {
        "success": True,
        "message": message
    }

    if data is not None:
        response["data"] = jsonable_encoder(data)

    return response
