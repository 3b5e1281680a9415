"""
订单相关的请求/响应模式
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.order import DaySelection, Order, OrderStatus
from ..models.user import UserRole


class OrderCreateRequest(BaseModel):
    """下单请求，selections 为前端原始选餐，由服务层清洗"""
    week_start: date = Field(..., description="订餐周（周一）")
    selections: List[Dict[str, Any]] = Field(default_factory=list, description="原始选餐列表")


class OrderUpdateRequest(BaseModel):
    """修改待支付订单的选餐"""
    selections: List[Dict[str, Any]] = Field(default_factory=list, description="原始选餐列表")


class OrderCancelRequest(BaseModel):
    """取消订单请求"""
    reason: Optional[str] = Field(None, max_length=500, description="取消原因")


class CheckoutResponse(BaseModel):
    """下单响应"""
    order_id: str = Field(..., description="订单ID")
    redirect_url: str = Field(..., description="支付网关跳转地址")
    total: int = Field(..., description="订单总金额")


class OrderResponse(BaseModel):
    """订单响应"""
    order_id: str = Field(..., description="订单ID")
    user_id: str = Field(..., description="用户ID")
    user_role: UserRole = Field(..., description="下单角色")
    week_start: date = Field(..., description="订餐周")
    selections: List[DaySelection] = Field(..., description="选餐明细")
    total: int = Field(..., description="订单总金额")
    status: OrderStatus = Field(..., description="订单状态")
    created_at: Optional[datetime] = Field(None, description="创建时间")
    updated_at: Optional[datetime] = Field(None, description="更新时间")
    paid_at: Optional[datetime] = Field(None, description="支付时间")
    cancelled_at: Optional[datetime] = Field(None, description="取消时间")
    payment_transaction_id: Optional[str] = Field(None, description="网关交易号")
    version: int = Field(..., description="版本号")

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(**order.model_dump(exclude={"metadata"}))


class OrderDetailResponse(OrderResponse):
    """订单详情响应，附带汇总和审计元数据"""
    summary: Dict[str, Any] = Field(default_factory=dict, description="午餐/加餐汇总")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="审计元数据")


class AdminStatusUpdateRequest(BaseModel):
    """管理员调整订单状态"""
    status: OrderStatus = Field(..., description="目标状态")
    notes: Optional[str] = Field(None, max_length=1000, description="备注")


class SimulateOutcomeRequest(BaseModel):
    """手动对账请求"""
    outcome: str = Field("approved", pattern="^(approved|declined)$", description="模拟的支付结果")


class LegacyImportRequest(BaseModel):
    """历史订单导入请求"""
    records: List[Dict[str, Any]] = Field(..., description="历史订单记录")


class PaymentReturnResponse(BaseModel):
    """支付回跳页面响应"""
    payment_outcome: str = Field(..., description="success | pending | cancelled | failed")
    order: Optional[OrderResponse] = Field(None, description="订单最新状态")
