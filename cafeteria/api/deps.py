"""
路由依赖
服务实例通过依赖注入获取，测试中用 app.dependency_overrides 替换 get_order_service
"""

from fastapi import Depends

from ..services.order_service import OrderService, order_service
from ..services.payment_reconciler import PaymentReconciler


def get_order_service() -> OrderService:
    return order_service


def get_reconciler(service: OrderService = Depends(get_order_service)) -> PaymentReconciler:
    return service.reconciler
