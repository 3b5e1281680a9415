"""
订单状态机
订单状态及其时间戳只能通过这里计算出的字段集合一起写入，
避免出现 paid_at 已设置但状态仍为 pending 之类的组合。

状态流转：
- pending -> processing_payment       网关创建支付意图 / 网关回报处理中
- processing_payment -> paid          网关回调成功或手动对账确认
- processing_payment -> cancelled     网关回调失败、拒绝或取消
- pending | paid | cancelled -> pending   管理员重置
- 非 cancelled -> cancelled            管理员取消
- pending -> cancelled                用户取消自己的待支付订单
目标状态与当前状态相同的流转为幂等空操作。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from ..core.exceptions import InvalidTransitionError
from ..models.order import Order, OrderStatus


class OrderTrigger(str, Enum):
    """触发状态流转的事件"""
    INTENT_CREATED = "intent_created"
    GATEWAY_PENDING = "gateway_pending"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_DECLINED = "payment_declined"
    ADMIN_RESET = "admin_reset"
    ADMIN_CANCEL = "admin_cancel"
    USER_CANCEL = "user_cancel"


# 触发事件 -> (允许的起始状态, 目标状态)
TRANSITIONS: Dict[OrderTrigger, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
    OrderTrigger.INTENT_CREATED: (
        frozenset({OrderStatus.PENDING}), OrderStatus.PROCESSING_PAYMENT),
    OrderTrigger.GATEWAY_PENDING: (
        frozenset({OrderStatus.PENDING}), OrderStatus.PROCESSING_PAYMENT),
    OrderTrigger.PAYMENT_APPROVED: (
        frozenset({OrderStatus.PROCESSING_PAYMENT}), OrderStatus.PAID),
    OrderTrigger.PAYMENT_DECLINED: (
        frozenset({OrderStatus.PROCESSING_PAYMENT}), OrderStatus.CANCELLED),
    OrderTrigger.ADMIN_RESET: (
        frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.CANCELLED}), OrderStatus.PENDING),
    OrderTrigger.ADMIN_CANCEL: (
        frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING_PAYMENT, OrderStatus.PAID}), OrderStatus.CANCELLED),
    OrderTrigger.USER_CANCEL: (
        frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED),
}


@dataclass
class TransitionPlan:
    """一次状态流转需要写入的字段"""
    from_status: OrderStatus
    to_status: OrderStatus
    changed: bool
    fields: Dict[str, Any] = field(default_factory=dict)
    triggers: Tuple[OrderTrigger, ...] = ()


class OrderStateMachine:
    """订单状态机，只计算字段，不做持久化"""

    def target_of(self, trigger: OrderTrigger) -> OrderStatus:
        return TRANSITIONS[OrderTrigger(trigger)][1]

    def can_apply(self, status: OrderStatus, trigger: OrderTrigger) -> bool:
        sources, target = TRANSITIONS[OrderTrigger(trigger)]
        return status == target or status in sources

    def plan(
        self,
        order: Order,
        trigger: OrderTrigger,
        now: datetime,
        transaction_ref: Optional[str] = None,
    ) -> TransitionPlan:
        """
        计算单步流转

        Raises:
            InvalidTransitionError: 当前状态不允许该事件
        """
        return self.plan_path(order, [trigger], now, transaction_ref)

    def plan_path(
        self,
        order: Order,
        triggers: Iterable[OrderTrigger],
        now: datetime,
        transaction_ref: Optional[str] = None,
    ) -> TransitionPlan:
        """
        连续执行多步流转，合并为一次写入的字段集合

        用于网关回调早于支付意图落库的情况：
        pending -> processing_payment -> paid 一次写完。
        """
        status = order.status
        metadata = dict(order.metadata or {})
        fields: Dict[str, Any] = {}
        applied = []

        for trigger in triggers:
            trigger = OrderTrigger(trigger)
            sources, target = TRANSITIONS[trigger]
            if status == target:
                continue
            if status not in sources:
                raise InvalidTransitionError(
                    f"cannot move order from {status.value} to {target.value} ({trigger.value})",
                    details={"order_id": order.order_id, "from": status.value,
                             "to": target.value, "trigger": trigger.value}
                )
            fields.update(self._side_effects(target, now, transaction_ref, metadata))
            applied.append(trigger)
            status = target

        if not applied:
            return TransitionPlan(order.status, order.status, False, {}, ())

        fields["status"] = status
        if "metadata" in fields:
            fields["metadata"] = metadata
        return TransitionPlan(order.status, status, True, fields, tuple(applied))

    def _side_effects(self, target: OrderStatus, now: datetime,
                      transaction_ref: Optional[str], metadata: Dict[str, Any]) -> Dict[str, Any]:
        if target == OrderStatus.PROCESSING_PAYMENT:
            effects: Dict[str, Any] = {}
            if transaction_ref:
                effects["payment_transaction_id"] = transaction_ref
            metadata["payment_requested_at"] = now.isoformat()
            effects["metadata"] = metadata
            return effects
        if target == OrderStatus.PAID:
            effects = {"paid_at": now, "cancelled_at": None}
            if transaction_ref:
                effects["payment_transaction_id"] = transaction_ref
            return effects
        if target == OrderStatus.CANCELLED:
            return {"cancelled_at": now, "paid_at": None}
        return {"paid_at": None, "cancelled_at": None}


# 全局状态机实例
state_machine = OrderStateMachine()
