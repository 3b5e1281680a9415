"""
支付路由模块
网关回调、回跳页面对账和手动对账
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from ...core.error_handler import create_success_response
from ...core.exceptions import InvalidCallbackError
from ...core.security import get_current_user
from ...models.user import UserProfile
from ...schemas.order import OrderResponse, PaymentReturnResponse, SimulateOutcomeRequest
from ...services.payment_gateway import CallbackOutcome
from ...services.payment_reconciler import PaymentReconciler, ReturnParams
from ..deps import get_reconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/notify")
async def payment_notify(request: Request, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """网关异步通知"""
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        logger.warning("Payment callback with invalid JSON body")
        raise InvalidCallbackError("invalid JSON body")
    if not isinstance(payload, dict):
        raise InvalidCallbackError("callback payload must be an object")

    order = await run_in_threadpool(reconciler.handle_callback, payload)
    return create_success_response(
        {"order_id": order.order_id, "status": order.status.value},
        "notification processed",
    )


@router.get("/notify")
def payment_notify_probe():
    """网关配置时用于检测通知地址是否可达"""
    return create_success_response({"endpoint": "payments/notify"}, "notify endpoint ready")


@router.get("/return")
def payment_return(
    status: Optional[str] = None,
    reference: Optional[str] = None,
    orderId: Optional[str] = None,
    requestId: Optional[str] = None,
    cancelled: bool = False,
    user: UserProfile = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """网关回跳页面：返回订单最新状态和展示用的结果"""
    params = ReturnParams(
        status=status,
        order_id=orderId or reference,
        transaction_ref=requestId,
        cancelled=cancelled,
    )
    result = reconciler.resolve_return(user, params)
    data = PaymentReturnResponse(
        payment_outcome=result.payment_outcome.value,
        order=OrderResponse.from_order(result.order) if result.order else None,
    )
    return create_success_response(data.model_dump())


@router.post("/{order_id}/simulate")
def simulate_payment(
    order_id: str,
    req: Optional[SimulateOutcomeRequest] = None,
    user: UserProfile = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """网关通知迟迟未到时手动对账"""
    outcome = CallbackOutcome(req.outcome if req else CallbackOutcome.APPROVED.value)
    order = reconciler.simulate_outcome(user, order_id, outcome)
    return create_success_response(OrderResponse.from_order(order).model_dump(), "payment reconciled")
