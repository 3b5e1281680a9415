"""
订单相关数据模型
"""

import datetime as dt
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import BaseEntity, TimestampMixin
from .user import UserRole


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"                         # 待支付
    PROCESSING_PAYMENT = "processing_payment"   # 已跳转网关，等待结果
    PAID = "paid"                               # 已支付
    CANCELLED = "cancelled"                     # 已取消


TERMINAL_STATUSES = (OrderStatus.PAID, OrderStatus.CANCELLED)
OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING_PAYMENT)


class ItemCategory(str, Enum):
    """餐品类别"""
    LUNCH = "lunch"
    SNACK = "snack"


class MenuItemSnapshot(BaseModel):
    """下单时的餐品快照，price 只用于展示，不参与总价计算"""
    code: str = Field(..., description="餐品编码")
    name: str = Field(..., description="餐品名称")
    price: int = Field(0, ge=0, description="下单时价格（最小货币单位）")


class DaySelection(BaseModel):
    """某一天某个孩子（或教职工本人）的选餐"""
    date: dt.date = Field(..., description="日期")
    child_ref: Optional[str] = Field(None, description="孩子ID，教职工为空")
    lunch_item: Optional[MenuItemSnapshot] = Field(None, description="午餐")
    snack_item: Optional[MenuItemSnapshot] = Field(None, description="加餐")

    def item(self, category: ItemCategory) -> Optional[MenuItemSnapshot]:
        if category == ItemCategory.LUNCH:
            return self.lunch_item
        return self.snack_item

    def present_categories(self) -> List[ItemCategory]:
        return [c for c in ItemCategory if self.item(c) is not None]

    @property
    def slot_owner(self) -> str:
        """餐位归属：孩子ID，教职工为 staff"""
        return self.child_ref or "staff"


class Order(BaseEntity, TimestampMixin):
    """订单完整模型"""
    order_id: str = Field(..., description="订单ID")
    user_id: str = Field(..., description="用户ID")
    user_role: UserRole = Field(..., description="下单角色")
    week_start: dt.date = Field(..., description="订餐周（周一）")
    selections: List[DaySelection] = Field(..., description="选餐明细")
    total: int = Field(..., description="订单总金额（最小货币单位）")
    status: OrderStatus = Field(..., description="订单状态")
    paid_at: Optional[dt.datetime] = Field(None, description="支付时间")
    cancelled_at: Optional[dt.datetime] = Field(None, description="取消时间")
    payment_transaction_id: Optional[str] = Field(None, description="网关交易号")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="审计元数据")
    version: int = Field(1, description="乐观锁版本号")

    @property
    def item_count(self) -> int:
        return sum(len(s.present_categories()) for s in self.selections)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class NewOrder(BaseModel):
    """待写入的新订单"""
    user_id: str
    user_role: UserRole
    week_start: dt.date
    selections: List[DaySelection]
    total: int
    status: OrderStatus = OrderStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[dt.datetime] = None
    paid_at: Optional[dt.datetime] = None
    cancelled_at: Optional[dt.datetime] = None
    payment_transaction_id: Optional[str] = None


class DateRange(BaseModel):
    """创建时间范围（闭区间）"""
    start: dt.datetime
    end: dt.datetime


class OrderFilter(BaseModel):
    """订单列表过滤条件"""
    user_id: Optional[str] = None
    week_start: Optional[dt.date] = None
    statuses: Optional[List[OrderStatus]] = None
    date_range: Optional[DateRange] = None
    user_role: Optional[UserRole] = None

    def cache_key(self) -> str:
        return self.model_dump_json()


class OrderStats(BaseModel):
    """订单统计"""
    total_orders: int = 0
    total_revenue: int = 0
    average_order_value: float = 0.0
    orders_by_status: Dict[str, int] = Field(default_factory=dict)
