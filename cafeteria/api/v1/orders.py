"""
订单路由模块
用户下单、查询、修改、取消以及重新支付
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from ...core.error_handler import create_success_response
from ...core.security import get_current_user
from ...models.order import OrderFilter, OrderStatus
from ...models.user import UserProfile
from ...schemas.common import ApiResponse, ErrorResponse
from ...schemas.order import (
    CheckoutResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderDetailResponse,
    OrderResponse,
    OrderUpdateRequest,
)
from ...services.order_service import OrderService
from ...services.order_total import summarize
from ..deps import get_order_service

router = APIRouter()

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


@router.post("", response_model=ApiResponse[CheckoutResponse], responses=_ERRORS)
def create_order(
    req: OrderCreateRequest,
    user: UserProfile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """下单并返回支付网关跳转地址"""
    result = service.create_order(user, req.selections, req.week_start)
    data = CheckoutResponse(order_id=result.order_id, redirect_url=result.redirect_url, total=result.total)
    return create_success_response(data.model_dump(), "order created")


@router.get("")
def list_my_orders(
    status: Optional[OrderStatus] = None,
    week_start: Optional[date] = None,
    user: UserProfile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """获取当前用户的订单"""
    order_filter = OrderFilter(
        user_id=user.user_id,
        week_start=week_start,
        statuses=[status] if status else None,
    )
    orders = service.list_orders(user, order_filter)
    return create_success_response({
        "orders": [OrderResponse.from_order(o).model_dump() for o in orders],
        "total": len(orders),
    })


@router.get("/{order_id}", responses=_ERRORS)
def get_order(
    order_id: str,
    user: UserProfile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """获取订单详情"""
    order = service.get_order(user, order_id)
    detail = OrderDetailResponse(
        **OrderResponse.from_order(order).model_dump(),
        summary=summarize(order.selections, order.user_role, service.price_table),
        metadata=order.metadata,
    )
    return create_success_response(detail.model_dump())


@router.put("/{order_id}", responses=_ERRORS)
def amend_order(
    order_id: str,
    req: OrderUpdateRequest,
    user: UserProfile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """修改待支付订单的选餐"""
    order = service.amend_order(user, order_id, req.selections)
    return create_success_response(OrderResponse.from_order(order).model_dump(), "order updated")


@router.post("/{order_id}/cancel", responses=_ERRORS)
def cancel_order(
    order_id: str,
    req: Optional[OrderCancelRequest] = None,
    user: UserProfile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """取消待支付订单"""
    order = service.cancel_order(user, order_id, req.reason if req else None)
    return create_success_response(OrderResponse.from_order(order).model_dump(), "order cancelled")


@router.post("/{order_id}/retry-payment", response_model=ApiResponse[CheckoutResponse], responses=_ERRORS)
def retry_payment(
    order_id: str,
    user: UserProfile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """为待支付订单重新申请支付"""
    result = service.reconciler.retry_payment(user, order_id)
    data = CheckoutResponse(order_id=result.order_id, redirect_url=result.redirect_url, total=result.total)
    return create_success_response(data.model_dump(), "payment requested")
