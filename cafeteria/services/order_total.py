"""
订单金额计算
总价一律按角色价格表计算，餐品快照中的 price 仅作历史展示
"""

from typing import Any, Dict, Iterable

from ..core.exceptions import ValidationError
from ..models.order import DaySelection, ItemCategory
from ..models.user import UserRole
from .pricing import PriceTable


def compute_total(selections: Iterable[DaySelection], role: UserRole, price_table: PriceTable) -> int:
    """
    计算订单总价

    Raises:
        ValidationError: 总价不为正
    """
    total = 0
    for selection in selections:
        for category in selection.present_categories():
            total += price_table.price(role, category)
    if total <= 0:
        raise ValidationError("order total must be positive")
    return total


def summarize(selections: Iterable[DaySelection], role: UserRole, price_table: PriceTable) -> Dict[str, Any]:
    """订单摘要：午餐/加餐数量、小计和按孩子汇总"""
    lunch_price = price_table.price(role, ItemCategory.LUNCH)
    snack_price = price_table.price(role, ItemCategory.SNACK)

    total_lunches = 0
    total_snacks = 0
    by_child: Dict[str, Dict[str, int]] = {}

    for selection in selections:
        child = by_child.setdefault(selection.slot_owner, {"lunches": 0, "snacks": 0, "subtotal": 0})
        if selection.lunch_item is not None:
            total_lunches += 1
            child["lunches"] += 1
            child["subtotal"] += lunch_price
        if selection.snack_item is not None:
            total_snacks += 1
            child["snacks"] += 1
            child["subtotal"] += snack_price

    return {
        "total_lunches": total_lunches,
        "total_snacks": total_snacks,
        "subtotal_lunches": total_lunches * lunch_price,
        "subtotal_snacks": total_snacks * snack_price,
        "total": total_lunches * lunch_price + total_snacks * snack_price,
        "by_child": by_child,
    }
