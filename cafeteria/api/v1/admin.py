"""
管理员订单路由模块
订单筛选、统计、状态调整和历史订单导入
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.exceptions import ValidationError
from ...core.security import require_admin
from ...models.order import DateRange, OrderFilter, OrderStatus
from ...models.user import UserProfile, UserRole
from ...schemas.order import AdminStatusUpdateRequest, LegacyImportRequest, OrderResponse
from ...services.order_service import OrderService
from ..deps import get_order_service

router = APIRouter()


def _build_filter(
    user_id: Optional[str] = None,
    week_start: Optional[date] = None,
    status: Optional[List[OrderStatus]] = Query(None),
    role: Optional[UserRole] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
) -> OrderFilter:
    date_range = None
    if created_from or created_to:
        if not (created_from and created_to):
            raise ValidationError("created_from and created_to must be given together")
        if created_from > created_to:
            raise ValidationError("created_from must not be after created_to")
        date_range = DateRange(start=created_from, end=created_to)
    return OrderFilter(
        user_id=user_id,
        week_start=week_start,
        statuses=status or None,
        user_role=role,
        date_range=date_range,
    )


@router.get("/orders")
def list_orders(
    order_filter: OrderFilter = Depends(_build_filter),
    admin: UserProfile = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """按条件筛选全部订单"""
    orders = service.list_orders(admin, order_filter)
    return create_success_response({
        "orders": [OrderResponse.from_order(o).model_dump() for o in orders],
        "total": len(orders),
    })


@router.get("/orders/stats")
def order_stats(
    order_filter: OrderFilter = Depends(_build_filter),
    admin: UserProfile = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """订单统计"""
    return create_success_response(service.order_stats(order_filter).model_dump())


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    req: AdminStatusUpdateRequest,
    admin: UserProfile = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """管理员调整订单状态"""
    order = service.update_order_status(admin, order_id, req.status, req.notes)
    return create_success_response(OrderResponse.from_order(order).model_dump(), "order status updated")


@router.post("/orders/legacy-import")
def legacy_import(
    req: LegacyImportRequest,
    admin: UserProfile = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """导入历史订单"""
    report = service.import_legacy_orders(req.records, actor=admin)
    return create_success_response(report, f"{len(report['imported'])} orders imported")
