"""
重复支付校验
同一用户同一周可以多次下单（追加订单），但已支付的餐位
（日期 + 孩子 + 类别）不允许再次支付。只有 paid 状态的订单参与比对。
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.exceptions import DuplicateSelectionError
from ..models.order import DaySelection, ItemCategory, Order, OrderStatus


@dataclass(frozen=True)
class SlotConflict:
    """一个冲突的餐位"""
    date: date
    child_ref: Optional[str]
    category: ItemCategory
    existing_item: str
    new_item: str
    child_name: Optional[str] = None

    def describe(self) -> str:
        who = self.child_name or self.child_ref or "staff"
        return (
            f"date {self.date.isoformat()}, child {who}: "
            f"{self.category.value} already paid as {self.existing_item}"
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "date": self.date.isoformat(),
            "child_ref": self.child_ref,
            "category": self.category.value,
            "existing_item": self.existing_item,
            "new_item": self.new_item,
            "message": self.describe(),
        }


def _paid_slot_map(orders: Iterable[Order]) -> Dict[Tuple[date, str], Dict[ItemCategory, str]]:
    paid: Dict[Tuple[date, str], Dict[ItemCategory, str]] = {}
    for order in orders:
        if order.status != OrderStatus.PAID:
            continue
        for selection in order.selections:
            existing = paid.setdefault((selection.date, selection.slot_owner), {})
            for category in selection.present_categories():
                existing[category] = selection.item(category).name
    return paid


def find_conflicts(
    candidates: Iterable[DaySelection],
    existing_orders: Iterable[Order],
    child_names: Optional[Dict[str, str]] = None,
) -> List[SlotConflict]:
    """
    找出候选选餐中与已支付订单重复的餐位

    Args:
        candidates: 清洗后的候选选餐
        existing_orders: 同一用户同一周的历史订单（非 paid 的会被忽略）
        child_names: 孩子ID到姓名的映射，仅用于错误提示
    """
    paid = _paid_slot_map(existing_orders)
    names = child_names or {}
    conflicts: List[SlotConflict] = []

    for selection in candidates:
        existing = paid.get((selection.date, selection.slot_owner))
        if not existing:
            continue
        for category in selection.present_categories():
            if category in existing:
                conflicts.append(SlotConflict(
                    date=selection.date,
                    child_ref=selection.child_ref,
                    category=category,
                    existing_item=existing[category],
                    new_item=selection.item(category).name,
                    child_name=names.get(selection.child_ref) if selection.child_ref else None,
                ))
    return conflicts


def ensure_no_duplicates(
    candidates: Iterable[DaySelection],
    existing_orders: Iterable[Order],
    child_names: Optional[Dict[str, str]] = None,
):
    """存在重复餐位时抛出 DuplicateSelectionError"""
    conflicts = find_conflicts(candidates, existing_orders, child_names)
    if conflicts:
        raise DuplicateSelectionError(conflicts)
