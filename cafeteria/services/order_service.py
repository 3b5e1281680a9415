"""
订单服务模块
面向 API 层的订单业务入口，组合选餐清洗、重复支付校验、
总价计算、状态机和支付对账

主要功能：
- 下单（委托 PaymentReconciler.checkout）
- 订单查询和列表（本人或管理员）
- 用户取消待支付订单、修改待支付订单的选餐
- 管理员强制调整订单状态
- 订单统计和历史订单导入

业务规则：
- 同一周可以多次下单，已支付的餐位不能重复支付
- 总价始终按角色价格表重新计算
- 所有状态变化经过状态机，写入带版本校验
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.exceptions import (
    InvalidTransitionError, OrderNotFoundError, PermissionDeniedError,
    PersistenceError, ValidationError,
)
from ..core.timestamps import utc_now
from ..models.order import Order, OrderFilter, OrderStats, OrderStatus
from ..models.user import UserProfile, UserRole
from .duplicate_guard import ensure_no_duplicates
from .legacy_import import LegacyOrderImporter
from .order_lifecycle import OrderStateMachine, OrderTrigger, state_machine
from .order_store import OrderStore
from .order_total import compute_total
from .payment_reconciler import CheckoutResult, PaymentReconciler
from .pricing import PriceTable
from .selection_sanitizer import sanitize_selections

logger = logging.getLogger(__name__)

# 管理员目标状态 -> 触发事件
ADMIN_TRIGGERS = {
    OrderStatus.PENDING: OrderTrigger.ADMIN_RESET,
    OrderStatus.CANCELLED: OrderTrigger.ADMIN_CANCEL,
    OrderStatus.PAID: OrderTrigger.PAYMENT_APPROVED,
}


class OrderService:
    """订单服务类，封装所有订单相关的业务逻辑"""

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        reconciler: Optional[PaymentReconciler] = None,
        price_table: Optional[PriceTable] = None,
        machine: Optional[OrderStateMachine] = None,
        clock=utc_now,
    ):
        self.store = store or OrderStore()
        self.price_table = price_table or PriceTable.from_settings()
        self.machine = machine or state_machine
        self.clock = clock
        self.reconciler = reconciler or PaymentReconciler(
            store=self.store, price_table=self.price_table, machine=self.machine, clock=clock
        )
        self.legacy_importer = LegacyOrderImporter(self.price_table)

    def create_order(self, user: UserProfile, raw_selections: Any, week_start: Any) -> CheckoutResult:
        """
        创建订单并申请支付

        Returns:
            CheckoutResult: 订单ID、网关跳转地址和总价

        Raises:
            ValidationError: 选餐为空或用户资料不完整
            DuplicateSelectionError: 含有已支付的餐位
            GatewayError: 网关失败，订单保留为 pending
        """
        return self.reconciler.checkout(user, raw_selections, week_start)

    def get_order(self, user: UserProfile, order_id: str) -> Order:
        """获取订单详情，非本人且非管理员时视为不存在"""
        order = self.store.get_by_id(order_id)
        if order is None or not (order.user_id == user.user_id or user.is_admin):
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, user: UserProfile, order_filter: Optional[OrderFilter] = None) -> List[Order]:
        """列出订单，普通用户只能看到自己的订单"""
        order_filter = order_filter or OrderFilter()
        if not user.is_admin:
            order_filter = order_filter.model_copy(update={"user_id": user.user_id})
        return self.store.list_by_filter(order_filter)

    def cancel_order(self, user: UserProfile, order_id: str, reason: Optional[str] = None) -> Order:
        """
        用户取消自己的待支付订单

        Raises:
            OrderNotFoundError: 订单不存在或不属于该用户
            InvalidTransitionError: 订单不是 pending
        """
        self.get_order(user, order_id)
        now = self.clock()

        def build(order: Order) -> Optional[Dict[str, Any]]:
            plan = self.machine.plan(order, OrderTrigger.USER_CANCEL, now)
            if not plan.changed:
                return None
            fields = dict(plan.fields)
            metadata = dict(order.metadata)
            metadata["cancel_reason"] = reason or "cancelled by user"
            metadata["cancelled_by"] = user.user_id
            fields["metadata"] = metadata
            return fields

        before, after = self.store.modify(order_id, build)
        if after is not before:
            self._audit("order_cancel", {"reason": reason}, after, actor_id=user.user_id)
        return after

    def amend_order(self, user: UserProfile, order_id: str, raw_selections: Any) -> Order:
        """
        修改待支付订单的选餐

        重新清洗、重新比对已支付餐位并重新计算总价，按版本条件写入

        Raises:
            InvalidTransitionError: 订单不是 pending
            ValidationError: 新选餐为空
            DuplicateSelectionError: 新选餐含有已支付的餐位
        """
        order = self.get_order(user, order_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidTransitionError(
                f"only pending orders can be changed, order is {order.status.value}",
                details={"order_id": order_id, "status": order.status.value}
            )

        selections = sanitize_selections(
            raw_selections, order.week_start, order.user_role, self.price_table,
            known_children=user.child_ids if order.user_role == UserRole.GUARDIAN and not user.is_admin else None,
        )
        paid_orders = self.store.list_by_filter(OrderFilter(
            user_id=order.user_id, week_start=order.week_start, statuses=[OrderStatus.PAID]
        ))
        ensure_no_duplicates(selections, paid_orders,
                             child_names={c.child_id: c.name for c in user.children})
        total = compute_total(selections, order.user_role, self.price_table)

        metadata = dict(order.metadata)
        metadata["amended_at"] = self.clock().isoformat()
        metadata["previous_total"] = order.total
        updated = self.store.update(
            order_id,
            {"selections": selections, "total": total, "metadata": metadata},
            expected_version=order.version,
        )
        self._audit("order_amend", {"previous_total": order.total, "total": total},
                    updated, actor_id=user.user_id)
        return updated

    def update_order_status(self, admin: UserProfile, order_id: str, status: OrderStatus,
                            notes: Optional[str] = None) -> Order:
        """
        管理员调整订单状态

        pending 为重置、cancelled 为强制取消、paid 为手动确认支付
        （只适用于 processing_payment 的订单）

        Raises:
            PermissionDeniedError: 非管理员
            ValidationError: 不支持的目标状态
            InvalidTransitionError: 当前状态不允许
        """
        if not admin.is_admin:
            raise PermissionDeniedError("admin privileges required")
        status = OrderStatus(status)
        trigger = ADMIN_TRIGGERS.get(status)
        if trigger is None:
            raise ValidationError(f"status {status.value} cannot be set manually")
        now = self.clock()

        def build(order: Order) -> Optional[Dict[str, Any]]:
            plan = self.machine.plan(order, trigger, now, order.payment_transaction_id)
            if not plan.changed and not notes:
                return None
            fields = dict(plan.fields)
            metadata = dict(fields.get("metadata") or order.metadata)
            if notes:
                history = list(metadata.get("admin_notes") or [])
                history.append({"at": now.isoformat(), "by": admin.user_id,
                                "status": status.value, "note": notes})
                metadata["admin_notes"] = history
            fields["metadata"] = metadata
            return fields

        before, after = self.store.modify(order_id, build)
        if after is not before:
            logger.info("Admin %s set order %s %s -> %s",
                        admin.user_id, order_id, before.status.value, after.status.value)
            self._audit("order_transition",
                        {"source": "admin", "trigger": trigger.value, "from": before.status.value,
                         "to": after.status.value, "notes": notes},
                        after, actor_id=admin.user_id)
        return after

    def order_stats(self, order_filter: Optional[OrderFilter] = None) -> OrderStats:
        """订单统计"""
        return self.store.stats(order_filter)

    def import_legacy_orders(self, records: Iterable[Mapping[str, Any]],
                             actor: Optional[UserProfile] = None) -> Dict[str, Any]:
        """
        导入历史订单

        无法解析出餐品的记录被跳过，不影响其他记录

        Returns:
            dict: imported（新订单ID列表）和 skipped（序号与原因）
        """
        imported: List[str] = []
        skipped: List[Dict[str, Any]] = []

        for index, record in enumerate(records):
            if not isinstance(record, Mapping):
                skipped.append({"index": index, "reason": "record must be an object"})
                continue
            try:
                new_order = self.legacy_importer.build_order(record)
                order_id = self.store.create(new_order)
            except (ValidationError, PersistenceError) as e:
                logger.warning("Skipping legacy record %d: %s", index, e.message)
                skipped.append({"index": index, "reason": e.message})
                continue
            imported.append(order_id)

        logger.info("Legacy import finished: %d imported, %d skipped", len(imported), len(skipped))
        try:
            self.store.log_event("legacy_import", {"imported": len(imported), "skipped": skipped},
                                 actor_id=actor.user_id if actor else None)
        except PersistenceError:
            logger.exception("Failed to write legacy import audit log")
        return {"imported": imported, "skipped": skipped}

    def _audit(self, action: str, detail: Any, order: Order, actor_id: Optional[str] = None):
        try:
            self.store.log_event(action, detail, order_id=order.order_id,
                                 user_id=order.user_id, actor_id=actor_id)
        except PersistenceError:
            logger.exception("Failed to write audit log %s for order %s", action, order.order_id)


# 全局订单服务实例
order_service = OrderService()
