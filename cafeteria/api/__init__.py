"""
API routes and endpoints.
"""

from fastapi import APIRouter
from .v1 import admin, orders, payments

api_router = APIRouter()

# 包含所有v1路由
api_router.include_router(orders.router, prefix="/orders", tags=["订单"])
api_router.include_router(payments.router, prefix="/payments", tags=["支付"])
api_router.include_router(admin.router, prefix="/admin", tags=["管理"])
