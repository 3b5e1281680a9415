"""
订单状态机测试
"""

from datetime import datetime, timezone

import pytest

from ..core.exceptions import InvalidTransitionError
from ..models.order import DaySelection, MenuItemSnapshot, Order, OrderStatus
from ..models.user import UserRole
from ..services.order_lifecycle import OrderStateMachine, OrderTrigger
from .conftest import MONDAY, WEEK

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _order(status, **extra):
    return Order(
        order_id="o-1",
        user_id="u-1",
        user_role=UserRole.GUARDIAN,
        week_start=WEEK,
        selections=[DaySelection(date=MONDAY, child_ref="c1",
                                 lunch_item=MenuItemSnapshot(code="L1", name="Pollo"))],
        total=3000,
        status=status,
        **extra,
    )


def _apply(order, plan):
    return order.model_copy(update=plan.fields)


@pytest.fixture
def machine():
    return OrderStateMachine()


class TestTransitions:

    def test_intent_created_stores_reference(self, machine):
        plan = machine.plan(_order(OrderStatus.PENDING), OrderTrigger.INTENT_CREATED, NOW, "req-1")
        assert plan.changed
        assert plan.to_status == OrderStatus.PROCESSING_PAYMENT
        assert plan.fields["payment_transaction_id"] == "req-1"
        assert plan.fields["metadata"]["payment_requested_at"] == NOW.isoformat()

    def test_approved_sets_paid_at(self, machine):
        plan = machine.plan(_order(OrderStatus.PROCESSING_PAYMENT), OrderTrigger.PAYMENT_APPROVED, NOW)
        assert plan.fields["status"] == OrderStatus.PAID
        assert plan.fields["paid_at"] == NOW
        assert plan.fields["cancelled_at"] is None

    def test_declined_sets_cancelled_at(self, machine):
        plan = machine.plan(_order(OrderStatus.PROCESSING_PAYMENT), OrderTrigger.PAYMENT_DECLINED, NOW)
        assert plan.fields["status"] == OrderStatus.CANCELLED
        assert plan.fields["cancelled_at"] == NOW
        assert plan.fields["paid_at"] is None

    def test_paid_twice_is_noop(self, machine):
        once = _apply(_order(OrderStatus.PROCESSING_PAYMENT),
                      machine.plan(_order(OrderStatus.PROCESSING_PAYMENT), OrderTrigger.PAYMENT_APPROVED, NOW))
        second = machine.plan(once, OrderTrigger.PAYMENT_APPROVED, NOW)
        assert not second.changed
        assert second.fields == {}
        assert once.status == OrderStatus.PAID

    def test_pending_cannot_jump_to_paid(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.plan(_order(OrderStatus.PENDING), OrderTrigger.PAYMENT_APPROVED, NOW)

    def test_cancelled_cannot_become_paid(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.plan(_order(OrderStatus.CANCELLED), OrderTrigger.PAYMENT_APPROVED, NOW)

    def test_user_cancel_only_pending(self, machine):
        plan = machine.plan(_order(OrderStatus.PENDING), OrderTrigger.USER_CANCEL, NOW)
        assert plan.to_status == OrderStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            machine.plan(_order(OrderStatus.PROCESSING_PAYMENT), OrderTrigger.USER_CANCEL, NOW)

    def test_admin_reset_clears_timestamps(self, machine):
        paid = _order(OrderStatus.PAID, paid_at=NOW)
        plan = machine.plan(paid, OrderTrigger.ADMIN_RESET, NOW)
        assert plan.fields["status"] == OrderStatus.PENDING
        assert plan.fields["paid_at"] is None
        assert plan.fields["cancelled_at"] is None

    def test_admin_cancel_from_paid(self, machine):
        plan = machine.plan(_order(OrderStatus.PAID, paid_at=NOW), OrderTrigger.ADMIN_CANCEL, NOW)
        assert plan.fields["cancelled_at"] == NOW
        assert plan.fields["paid_at"] is None

    def test_plan_path_merges_steps(self, machine):
        plan = machine.plan_path(
            _order(OrderStatus.PENDING),
            [OrderTrigger.INTENT_CREATED, OrderTrigger.PAYMENT_APPROVED],
            NOW, "req-9",
        )
        assert plan.from_status == OrderStatus.PENDING
        assert plan.to_status == OrderStatus.PAID
        assert plan.triggers == (OrderTrigger.INTENT_CREATED, OrderTrigger.PAYMENT_APPROVED)
        assert plan.fields["payment_transaction_id"] == "req-9"
        assert plan.fields["paid_at"] == NOW
        assert "payment_requested_at" in plan.fields["metadata"]

    @pytest.mark.parametrize("trigger", list(OrderTrigger))
    def test_paid_and_cancelled_never_both_set(self, machine, trigger):
        for status in OrderStatus:
            order = _order(status,
                           paid_at=NOW if status == OrderStatus.PAID else None,
                           cancelled_at=NOW if status == OrderStatus.CANCELLED else None)
            try:
                plan = machine.plan(order, trigger, NOW)
            except InvalidTransitionError:
                continue
            result = _apply(order, plan)
            assert not (result.paid_at and result.cancelled_at)
