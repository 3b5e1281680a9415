"""
支付对账服务
负责下单支付流程以及把网关结果（回调、回跳页面、手动对账）
映射为订单状态。所有状态写入都经过 OrderStateMachine，
并以 version 做条件更新，冲突时重新读取订单后重试。

下单流程：
1. 校验用户资料（家长至少登记一个孩子，且必须有邮箱）
2. 清洗选餐
3. 与本周已支付订单比对重复餐位
4. 按角色价格计算总价
5. 以 pending 状态写入订单
6. 向网关申请支付意图；成功则转为 processing_payment，
   失败则订单保持 pending 以便重试
7. 返回网关跳转地址
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..config.settings import Settings, settings
from ..core.exceptions import (
    ConcurrencyError, GatewayError, InvalidCallbackError, InvalidTransitionError,
    OrderNotFoundError, PersistenceError, ReconcileTooEarlyError, ValidationError,
)
from ..core.timestamps import parse_stored_timestamp, utc_now
from ..models.order import NewOrder, Order, OrderFilter, OrderStatus
from ..models.user import UserProfile, UserRole
from .duplicate_guard import ensure_no_duplicates
from .order_lifecycle import OrderStateMachine, OrderTrigger, state_machine
from .order_store import OrderStore
from .order_total import compute_total
from .payment_gateway import (
    CallbackOutcome, CallbackResult, GetNetGateway, PaymentGateway, PaymentIntent,
    PaymentIntentRequest,
)
from .pricing import PriceTable
from .selection_sanitizer import parse_week_start, sanitize_selections

logger = logging.getLogger(__name__)


# 回跳页面中表示用户主动取消的状态
_CANCEL_STATUSES = frozenset({"CANCELLED", "CANCELED", "CANCELADA", "CANCELADO"})


class ReturnOutcome(str, Enum):
    """回跳页面展示的支付结果"""
    SUCCESS = "success"
    PENDING = "pending"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class CheckoutResult:
    order_id: str
    redirect_url: str
    total: int
    transaction_ref: Optional[str] = None


@dataclass
class ReturnParams:
    """网关回跳地址上的查询参数"""
    status: Optional[str] = None
    order_id: Optional[str] = None
    transaction_ref: Optional[str] = None
    cancelled: bool = False

    @property
    def reports_cancel(self) -> bool:
        return self.cancelled or (self.status or "").strip().upper() in _CANCEL_STATUSES


@dataclass
class ReturnStatus:
    payment_outcome: ReturnOutcome
    order: Optional[Order]


def customer_name(user: UserProfile) -> str:
    """网关需要的付款人姓名：显示名，其次邮箱前缀"""
    if user.name and user.name.strip():
        return user.name.strip()
    if user.email and "@" in user.email:
        local = user.email.split("@", 1)[0].replace(".", " ").replace("_", " ").strip()
        if local:
            return local.title()
    return "Cliente"


class PaymentReconciler:
    """支付对账服务"""

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        gateway: Optional[PaymentGateway] = None,
        price_table: Optional[PriceTable] = None,
        machine: Optional[OrderStateMachine] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store or OrderStore()
        self.gateway = gateway or GetNetGateway()
        self.price_table = price_table or PriceTable.from_settings()
        self.machine = machine or state_machine
        self.config = config or settings
        self.clock = clock

    # ---- 下单 ----

    def checkout(self, user: UserProfile, raw_selections: Any, week_start: Any) -> CheckoutResult:
        """
        下单并申请支付

        Raises:
            ValidationError: 用户资料不完整或选餐为空
            DuplicateSelectionError: 含有已支付的餐位
            GatewayError: 网关失败，订单保持 pending，details 中带 order_id
        """
        self._validate_profile(user)
        week_start = parse_week_start(week_start)
        selections = sanitize_selections(
            raw_selections, week_start, user.role, self.price_table,
            known_children=user.child_ids if user.role == UserRole.GUARDIAN else None,
        )
        self._ensure_no_paid_slots(user, week_start, selections)
        total = compute_total(selections, user.role, self.price_table)

        order_id = self.store.create(NewOrder(
            user_id=user.user_id,
            user_role=user.role,
            week_start=week_start,
            selections=selections,
            total=total,
            metadata={"customer_email": user.email},
        ))
        self._audit("order_create", {"total": total, "week_start": week_start,
                                     "items": sum(len(s.present_categories()) for s in selections)},
                    order_id=order_id, user_id=user.user_id)

        return self._start_payment(user, self.store.get_by_id(order_id))

    def retry_payment(self, user: UserProfile, order_id: str) -> CheckoutResult:
        """为已有的 pending 订单重新申请支付意图，不创建新订单"""
        order = self._get_owned(user, order_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidTransitionError(
                f"order is {order.status.value}, only pending orders can be paid",
                details={"order_id": order_id, "status": order.status.value}
            )
        self._validate_profile(user)
        self._ensure_no_paid_slots(user, order.week_start, order.selections)
        return self._start_payment(user, order)

    def _validate_profile(self, user: UserProfile):
        if user.role == UserRole.GUARDIAN and not user.children:
            raise ValidationError("guardian must have at least one registered child")
        if not user.email:
            raise ValidationError("an email address is required to pay")

    def _ensure_no_paid_slots(self, user: UserProfile, week_start, selections):
        paid_orders = self.store.list_by_filter(OrderFilter(
            user_id=user.user_id, week_start=week_start, statuses=[OrderStatus.PAID]
        ))
        ensure_no_duplicates(selections, paid_orders,
                             child_names={c.child_id: c.name for c in user.children})

    def _start_payment(self, user: UserProfile, order: Order) -> CheckoutResult:
        request = PaymentIntentRequest(
            order_id=order.order_id,
            amount=order.total,
            currency=self.config.currency,
            description=f"School cafeteria order - week of {order.week_start.isoformat()}",
            customer_email=user.email,
            customer_name=customer_name(user),
        )
        try:
            intent = self.gateway.create_payment_intent(request)
        except GatewayError as e:
            logger.warning("Payment intent failed for order %s: %s", order.order_id, e.message)
            self._record_payment_error(order.order_id, e)
            details = dict(e.details)
            details["order_id"] = order.order_id
            raise GatewayError(e.message, retryable=e.retryable,
                               status_code=e.status_code, details=details) from e

        self._record_intent(order.order_id, intent)
        logger.info("Order %s sent to gateway (ref=%s)", order.order_id, intent.transaction_ref)
        return CheckoutResult(
            order_id=order.order_id,
            redirect_url=intent.redirect_url,
            total=order.total,
            transaction_ref=intent.transaction_ref,
        )

    def _record_intent(self, order_id: str, intent: PaymentIntent):
        now = self.clock()

        def build(order: Order) -> Optional[Dict[str, Any]]:
            if order.status != OrderStatus.PENDING:
                # 回调先到，订单状态已经推进
                return None
            fields = self.machine.plan(order, OrderTrigger.INTENT_CREATED, now, intent.transaction_ref).fields
            fields["metadata"].pop("last_payment_error", None)
            return fields

        self._write_with_retry(order_id, build, action="payment_intent_created",
                               detail={"transaction_ref": intent.transaction_ref})

    def _record_payment_error(self, order_id: str, error: GatewayError):
        now = self.clock()

        def build(order: Order) -> Dict[str, Any]:
            metadata = dict(order.metadata)
            metadata["last_payment_error"] = {
                "message": error.message,
                "code": error.error_code,
                "retryable": error.retryable,
                "at": now.isoformat(),
            }
            return {"metadata": metadata}

        try:
            self._write_with_retry(order_id, build)
        except (PersistenceError, ConcurrencyError):
            logger.exception("Could not record payment error on order %s", order_id)
        self._audit("payment_intent_failed", {"message": error.message, "retryable": error.retryable},
                    order_id=order_id)

    # ---- 回调 ----

    def handle_callback(self, payload: Mapping[str, Any]) -> Order:
        """
        处理网关回调

        重复回调不会产生副作用；与已完结状态矛盾的结果只记录在
        metadata.ignored_outcomes 中，无法识别的结果记录在
        metadata.unknown_outcomes 中。

        Raises:
            InvalidCallbackError: 载荷无效，不修改任何订单
            OrderNotFoundError: 回调中的订单不存在
        """
        try:
            result = self.gateway.parse_callback(payload)
        except InvalidCallbackError as e:
            logger.warning("Rejected payment callback: %s", e.message)
            self._audit("callback_rejected", {"reason": e.message, "payload": payload})
            raise

        now = self.clock()
        logger.info("Payment callback for order %s: %s (%s)",
                    result.order_id, result.raw_status, result.outcome.value)
        try:
            return self._write_with_retry(
                result.order_id,
                lambda order: self._callback_fields(order, result, now),
                action="order_transition",
                detail={"source": "callback", "outcome": result.outcome.value,
                        "raw_status": result.raw_status, "transaction_ref": result.transaction_ref},
            )
        except OrderNotFoundError:
            logger.error("Payment callback for unknown order %s", result.order_id)
            self._audit("callback_unmatched", {"raw_status": result.raw_status}, order_id=result.order_id)
            raise

    def _callback_triggers(self, status: OrderStatus, outcome: CallbackOutcome) -> Optional[List[OrderTrigger]]:
        """结果对应的流转路径；None 表示与已完结状态矛盾"""
        if outcome == CallbackOutcome.APPROVED:
            if status == OrderStatus.CANCELLED:
                return None
            if status == OrderStatus.PENDING:
                return [OrderTrigger.INTENT_CREATED, OrderTrigger.PAYMENT_APPROVED]
            return [OrderTrigger.PAYMENT_APPROVED]
        if outcome == CallbackOutcome.DECLINED:
            if status == OrderStatus.PAID:
                return None
            if status == OrderStatus.PENDING:
                return [OrderTrigger.INTENT_CREATED, OrderTrigger.PAYMENT_DECLINED]
            return [OrderTrigger.PAYMENT_DECLINED]
        if status == OrderStatus.PENDING:
            return [OrderTrigger.GATEWAY_PENDING]
        return []

    def _callback_fields(self, order: Order, result: CallbackResult, now: datetime) -> Optional[Dict[str, Any]]:
        entry = {
            "outcome": result.outcome.value,
            "raw_status": result.raw_status,
            "transaction_ref": result.transaction_ref,
            "received_at": now.isoformat(),
        }

        if result.outcome == CallbackOutcome.UNKNOWN:
            logger.warning("Unknown payment status %r for order %s", result.raw_status, order.order_id)
            return self._append_outcome(order, "unknown_outcomes", entry)

        triggers = self._callback_triggers(order.status, result.outcome)
        if triggers is None:
            logger.warning("Ignoring %s callback for %s order %s",
                           result.outcome.value, order.status.value, order.order_id)
            return self._append_outcome(order, "ignored_outcomes", entry)

        plan = self.machine.plan_path(order, triggers, now, result.transaction_ref)
        if not plan.changed:
            return None

        fields = dict(plan.fields)
        metadata = dict(fields.get("metadata") or order.metadata)
        metadata["last_callback"] = entry
        fields["metadata"] = metadata
        return fields

    def _append_outcome(self, order: Order, key: str, entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        metadata = dict(order.metadata)
        history = list(metadata.get(key) or [])
        # 同一结果重放时不重复记录
        for seen in history:
            if (seen.get("raw_status"), seen.get("transaction_ref")) == (entry["raw_status"], entry["transaction_ref"]):
                return None
        history.append(entry)
        metadata[key] = history
        return {"metadata": metadata}

    # ---- 对账 ----

    def reconcile(self, user: UserProfile, order_id: Optional[str] = None) -> Order:
        """
        查找用户需要对账的订单，返回其最新状态

        没有可用的订单号时，依次回退到最近一笔 processing_payment 订单、
        最近一笔任意状态的订单。
        """
        order = self._find_for_user(user, order_id)
        if order is None:
            raise OrderNotFoundError(order_id, message="no matching order found")
        return order

    def simulate_outcome(self, user: UserProfile, order_id: str,
                         outcome: CallbackOutcome = CallbackOutcome.APPROVED) -> Order:
        """
        手动对账：构造网关回调并走与真实回调相同的处理路径

        Raises:
            ReconcileTooEarlyError: 申请支付后等待时间不足
            InvalidTransitionError: 订单没有进行中的支付
        """
        order = self._get_owned(user, order_id)
        if order.is_terminal:
            return order
        if order.status != OrderStatus.PROCESSING_PAYMENT:
            raise InvalidTransitionError(
                "order has no payment in progress",
                details={"order_id": order_id, "status": order.status.value}
            )

        requested_at = parse_stored_timestamp(order.metadata.get("payment_requested_at")) or order.updated_at
        elapsed = (self.clock() - requested_at).total_seconds() if requested_at else 0.0
        wait = self.config.manual_reconcile_after_seconds
        if elapsed < wait:
            raise ReconcileTooEarlyError(
                f"payment was requested {int(elapsed)}s ago, wait {wait}s before reconciling",
                details={"order_id": order_id, "retry_after_seconds": int(wait - elapsed) + 1}
            )

        outcome = CallbackOutcome(outcome)
        logger.info("Simulating %s outcome for order %s", outcome.value, order_id)
        self._audit("manual_reconcile", {"outcome": outcome.value, "elapsed_seconds": int(elapsed)},
                    order_id=order_id, user_id=order.user_id, actor_id=user.user_id)
        payload = self.gateway.build_callback(order.order_id, order.payment_transaction_id, outcome)
        return self.handle_callback(payload)

    def resolve_return(self, user: UserProfile, params: ReturnParams) -> ReturnStatus:
        """网关回跳页面：找到订单并给出展示用的支付结果"""
        order = self._find_for_user(user, params.order_id, params.transaction_ref)
        if order is None:
            if params.reports_cancel:
                return ReturnStatus(ReturnOutcome.CANCELLED, None)
            raise OrderNotFoundError(params.order_id, message="no matching order found")

        if (self.config.simulate_on_return and not params.reports_cancel
                and order.status == OrderStatus.PROCESSING_PAYMENT):
            try:
                order = self.simulate_outcome(user, order.order_id)
            except ReconcileTooEarlyError:
                logger.info("Return for order %s arrived before the reconcile delay", order.order_id)

        return ReturnStatus(self._return_outcome(order, params), order)

    def _return_outcome(self, order: Order, params: ReturnParams) -> ReturnOutcome:
        if order.status == OrderStatus.PAID:
            return ReturnOutcome.SUCCESS
        if order.status == OrderStatus.PROCESSING_PAYMENT:
            return ReturnOutcome.PENDING
        if params.reports_cancel:
            return ReturnOutcome.CANCELLED
        return ReturnOutcome.FAILED

    # ---- 内部工具 ----

    def _get_owned(self, user: UserProfile, order_id: str) -> Order:
        order = self.store.get_by_id(order_id)
        if order is None or not (order.user_id == user.user_id or user.is_admin):
            raise OrderNotFoundError(order_id)
        return order

    def _find_for_user(self, user: UserProfile, order_id: Optional[str] = None,
                       transaction_ref: Optional[str] = None) -> Optional[Order]:
        if order_id:
            order = self.store.get_by_id(order_id)
            if order is not None and (order.user_id == user.user_id or user.is_admin):
                return order
            logger.info("Order %s not found for user %s, falling back", order_id, user.user_id)

        orders = self.store.list_by_filter(OrderFilter(user_id=user.user_id))
        if transaction_ref:
            for order in orders:
                if order.payment_transaction_id == transaction_ref:
                    return order
        for order in orders:
            if order.status == OrderStatus.PROCESSING_PAYMENT:
                return order
        return orders[0] if orders else None

    def _write_with_retry(self, order_id: str, build: Callable[[Order], Optional[Dict[str, Any]]],
                          action: Optional[str] = None, detail: Optional[Dict[str, Any]] = None) -> Order:
        before, after = self.store.modify(order_id, build)
        if action and after is not before:
            audit = dict(detail or {})
            audit.update({"from": before.status.value, "to": after.status.value})
            self._audit(action, audit, order_id=order_id, user_id=before.user_id)
        return after

    def _audit(self, action: str, detail: Any, order_id: Optional[str] = None,
               user_id: Optional[str] = None, actor_id: Optional[str] = None):
        try:
            self.store.log_event(action, detail, order_id=order_id, user_id=user_id, actor_id=actor_id)
        except PersistenceError:
            logger.exception("Failed to write audit log %s for order %s", action, order_id)
