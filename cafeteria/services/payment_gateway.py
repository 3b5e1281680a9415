"""
支付网关适配
PaymentGateway 定义核心业务需要的三个能力：创建支付意图、解析回调、
构造与真实回调同形的载荷（用于手动对账）。GetNetGateway 是基于
GetNet Web Checkout 的实现，使用 requests 调用其会话接口。
"""

import base64
import hashlib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ..core.exceptions import GatewayError, InvalidCallbackError
from ..core.timestamps import utc_now
from ..config.settings import Settings, settings

logger = logging.getLogger(__name__)


class CallbackOutcome(str, Enum):
    """网关回调归一化后的结果"""
    APPROVED = "approved"
    DECLINED = "declined"
    PENDING = "pending"
    UNKNOWN = "unknown"


# 网关状态词表（大写比较）
APPROVED_STATUSES = frozenset({
    "OK", "APPROVED", "PAID", "COMPLETED", "SUCCESS", "SUCCESSFUL",
    "APROBADA", "APROBADO", "EXITOSO", "CONFIRMED", "CONFIRMADO",
})
DECLINED_STATUSES = frozenset({
    "FAILED", "REJECTED", "CANCELLED", "CANCELED", "DECLINED", "DENIED",
    "RECHAZADA", "RECHAZADO", "CANCELADA", "FALLIDA", "DENEGADA", "ERROR",
})
PENDING_STATUSES = frozenset({
    "PENDING", "PROCESSING", "IN_PROGRESS",
    "PENDIENTE", "PROCESANDO", "EN_PROCESO",
})

# build_callback 使用的网关状态码
OUTCOME_STATUS_CODES = {
    CallbackOutcome.APPROVED: "APPROVED",
    CallbackOutcome.DECLINED: "REJECTED",
    CallbackOutcome.PENDING: "PENDING",
    CallbackOutcome.UNKNOWN: "UNKNOWN",
}


def classify_status(raw_status: Any) -> CallbackOutcome:
    """把网关状态字符串映射为 CallbackOutcome"""
    if raw_status is None:
        return CallbackOutcome.UNKNOWN
    normalized = str(raw_status).strip().upper()
    if normalized in APPROVED_STATUSES:
        return CallbackOutcome.APPROVED
    if normalized in DECLINED_STATUSES:
        return CallbackOutcome.DECLINED
    if normalized in PENDING_STATUSES:
        return CallbackOutcome.PENDING
    return CallbackOutcome.UNKNOWN


@dataclass
class PaymentIntentRequest:
    """创建支付意图的参数"""
    order_id: str
    amount: int
    currency: str
    description: str
    customer_email: str
    customer_name: str
    ip_address: str = "127.0.0.1"
    user_agent: str = "CafeteriaOrders/1.0"


@dataclass
class PaymentIntent:
    """网关返回的支付意图"""
    transaction_ref: str
    redirect_url: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallbackResult:
    """解析后的网关回调"""
    order_id: str
    outcome: CallbackOutcome
    raw_status: str
    transaction_ref: Optional[str] = None
    message: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """支付网关接口"""

    @abstractmethod
    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntent:
        """
        创建支付意图

        Raises:
            GatewayError: 网络失败或网关拒绝请求
        """

    @abstractmethod
    def parse_callback(self, payload: Mapping[str, Any]) -> CallbackResult:
        """
        解析网关回调

        Raises:
            InvalidCallbackError: 载荷缺少订单号或状态，或签名不匹配
        """

    @abstractmethod
    def build_callback(self, order_id: str, transaction_ref: Optional[str],
                       outcome: CallbackOutcome) -> Dict[str, Any]:
        """构造与真实回调同形的载荷"""


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value is not None and value != "":
            return str(value)
    return None


class GetNetGateway(PaymentGateway):
    """GetNet Web Checkout 网关"""

    def __init__(self, config: Optional[Settings] = None,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config or settings
        self.session = session or requests.Session()
        self.clock = clock

    @property
    def base_url(self) -> str:
        if self.config.getnet_environment == "production":
            return self.config.getnet_base_url.rstrip("/")
        return self.config.getnet_test_url.rstrip("/")

    # ---- 认证 ----

    def _auth(self) -> Dict[str, str]:
        """
        生成 Web Checkout 认证块
        tranKey = Base64(SHA-256(nonce + seed + secret))，nonce 使用原始字节
        """
        nonce = os.urandom(16)
        seed = self.clock().isoformat()
        digest = hashlib.sha256(nonce + seed.encode("utf-8") + self.config.getnet_secret.encode("utf-8")).digest()
        return {
            "login": self.config.getnet_login,
            "tranKey": base64.b64encode(digest).decode("ascii"),
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "seed": seed,
        }

    def callback_signature(self, request_id: str, status: str, date: str) -> str:
        """回调签名：sha1(requestId + status + date + secret)"""
        raw = f"{request_id}{status}{date}{self.config.getnet_secret}"
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    # ---- 支付意图 ----

    def _build_session_payload(self, request: PaymentIntentRequest) -> Dict[str, Any]:
        parts = (request.customer_name or "").split()
        first_name = parts[0] if parts else "Cliente"
        last_name = " ".join(parts[1:]) or "Usuario"
        public_url = self.config.app_public_url.rstrip("/")
        expiration = self.clock() + timedelta(minutes=5)

        return {
            "auth": self._auth(),
            "locale": self.config.getnet_locale,
            "buyer": {
                "name": first_name,
                "surname": last_name,
                "email": request.customer_email,
            },
            "payment": {
                "reference": request.order_id,
                "description": request.description,
                "amount": {"currency": request.currency, "total": int(request.amount)},
            },
            "expiration": expiration.isoformat(),
            "ipAddress": request.ip_address,
            "userAgent": request.user_agent,
            "returnUrl": f"{public_url}/payment/return?reference={request.order_id}&orderId={request.order_id}",
            "cancelUrl": f"{public_url}/order?cancelled=true&reference={request.order_id}",
            "notifyUrl": f"{public_url}{self.config.api_prefix}/payments/notify",
        }

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntent:
        if not self.config.getnet_login or not self.config.getnet_secret:
            logger.error("GetNet credentials are not configured")
            raise GatewayError("payment gateway is not configured", retryable=False)

        payload = self._build_session_payload(request)
        url = f"{self.base_url}/api/session/"
        logger.info("Creating GetNet session for order %s (amount=%s)", request.order_id, request.amount)

        try:
            response = self.session.post(url, json=payload, timeout=self.config.getnet_timeout_seconds)
        except requests.Timeout:
            raise GatewayError("payment gateway timed out", retryable=True)
        except requests.RequestException as e:
            raise GatewayError(f"payment gateway unreachable: {e}", retryable=True)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        status_block = data.get("status") if isinstance(data.get("status"), dict) else {}
        if response.status_code >= 400:
            logger.warning("GetNet rejected session for order %s: HTTP %s %s",
                           request.order_id, response.status_code, status_block)
            raise GatewayError(
                status_block.get("message") or "payment gateway rejected the request",
                retryable=response.status_code >= 500,
                status_code=response.status_code,
            )

        if status_block.get("status") != "OK" or not data.get("processUrl"):
            logger.warning("GetNet session for order %s not created: %s", request.order_id, status_block)
            raise GatewayError(
                status_block.get("message") or "payment gateway did not return a checkout url",
                retryable=False,
                status_code=response.status_code,
            )

        return PaymentIntent(
            transaction_ref=_first(data.get("requestId"), request.order_id),
            redirect_url=data["processUrl"],
            raw=data,
        )

    # ---- 回调 ----

    def parse_callback(self, payload: Mapping[str, Any]) -> CallbackResult:
        if not isinstance(payload, Mapping):
            raise InvalidCallbackError("callback payload must be an object")

        status_block = payload.get("status") if isinstance(payload.get("status"), Mapping) else {}
        transaction = payload.get("transaction") if isinstance(payload.get("transaction"), Mapping) else {}

        order_id = _first(payload.get("reference"), transaction.get("reference"),
                          payload.get("order_id"), payload.get("orderId"))
        if not order_id:
            raise InvalidCallbackError("missing order reference")

        raw_status = _first(status_block.get("status"), payload.get("state"),
                            payload.get("status") if isinstance(payload.get("status"), str) else None)
        if not raw_status:
            raise InvalidCallbackError("missing payment status", details={"order_id": order_id})

        transaction_ref = _first(payload.get("requestId"), transaction.get("transactionID"),
                                 payload.get("transaction_id"), payload.get("transactionId"))

        if self.config.getnet_verify_signature:
            signature = payload.get("signature")
            if not signature:
                logger.warning("Rejected callback for order %s: unsigned", order_id)
                raise InvalidCallbackError("missing callback signature", details={"order_id": order_id})
            expected = self.callback_signature(transaction_ref or "", raw_status, str(status_block.get("date") or ""))
            if signature != expected:
                logger.warning("Rejected callback for order %s: bad signature", order_id)
                raise InvalidCallbackError("callback signature mismatch", details={"order_id": order_id})

        return CallbackResult(
            order_id=order_id,
            outcome=classify_status(raw_status),
            raw_status=raw_status,
            transaction_ref=transaction_ref,
            message=status_block.get("message"),
            payload=dict(payload),
        )

    def build_callback(self, order_id: str, transaction_ref: Optional[str],
                       outcome: CallbackOutcome) -> Dict[str, Any]:
        status = OUTCOME_STATUS_CODES[CallbackOutcome(outcome)]
        date = self.clock().isoformat()
        request_id = transaction_ref or order_id
        return {
            "status": {"status": status, "message": "manual reconciliation", "date": date},
            "requestId": request_id,
            "reference": order_id,
            "signature": self.callback_signature(request_id, status, date),
        }
