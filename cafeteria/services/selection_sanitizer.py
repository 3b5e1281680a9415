"""
选餐数据清洗
把前端提交的原始选餐列表整理为规范的 DaySelection 列表

规则：
- 午餐和加餐都没有的条目丢弃
- 日期不在目标周 7 天内的条目丢弃
- 家长订单缺少孩子ID（或孩子未登记）的条目丢弃；教职工订单孩子ID置空
- 同一（日期，孩子）的多条记录合并为一个餐位
- 清洗后为空时抛出 ValidationError
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.exceptions import ValidationError
from ..models.order import DaySelection, ItemCategory, MenuItemSnapshot
from ..models.user import UserRole
from .pricing import PriceTable

logger = logging.getLogger(__name__)

EMPTY_SELECTION_MESSAGE = "must select at least one lunch or snack"

# 兼容前端的字段别名
_FIELD_ALIASES = {
    "child_ref": ("child_ref", "childRef", "child_id", "childId"),
    "lunch_item": ("lunch_item", "lunchItem", "lunch"),
    "snack_item": ("snack_item", "snackItem", "snack"),
}


def parse_week_start(value: Any) -> date:
    """解析订餐周起始日，必须是周一"""
    if isinstance(value, datetime):
        week_start = value.date()
    elif isinstance(value, date):
        week_start = value
    else:
        try:
            week_start = date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"invalid week start date: {value}")
    if week_start.weekday() != 0:
        raise ValidationError(f"week start must be a Monday: {week_start.isoformat()}")
    return week_start


def week_dates(week_start: date) -> List[date]:
    """订餐周的 7 个日期"""
    week_start = parse_week_start(week_start)
    return [week_start + timedelta(days=i) for i in range(7)]


def _field(entry: Mapping[str, Any], name: str) -> Any:
    for alias in _FIELD_ALIASES.get(name, (name,)):
        if alias in entry and entry[alias] is not None:
            return entry[alias]
    return None


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _to_mapping(entry: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(entry, Mapping):
        return entry
    dump = getattr(entry, "model_dump", None)
    if callable(dump):
        return dump()
    return None


def _parse_item(raw: Any, role: UserRole, category: ItemCategory,
                price_table: PriceTable) -> Optional[MenuItemSnapshot]:
    """解析单个餐品，缺少编码或名称视为未选择"""
    if isinstance(raw, MenuItemSnapshot):
        return raw
    raw = _to_mapping(raw)
    if not raw:
        return None
    code = str(raw.get("code") or raw.get("id") or "").strip()
    name = str(raw.get("name") or "").strip()
    if not code or not name:
        return None
    try:
        price = int(raw.get("price") or 0)
    except (TypeError, ValueError):
        price = 0
    if price <= 0:
        price = price_table.price(role, category)
    return MenuItemSnapshot(code=code, name=name, price=price)


def sanitize_selections(
    raw_selections: Optional[Iterable[Any]],
    week_start: Any,
    role: UserRole,
    price_table: PriceTable,
    known_children: Optional[Sequence[str]] = None,
) -> List[DaySelection]:
    """
    清洗原始选餐列表

    Args:
        raw_selections: 原始条目 {date, childRef?, lunchItem?, snackItem?}
        week_start: 订餐周（周一）
        role: 下单角色
        price_table: 价格表，用于补全缺失的快照价格
        known_children: 家长已登记的孩子ID，为空时不校验

    Returns:
        List[DaySelection]: 保持首次出现顺序的规范选餐

    Raises:
        ValidationError: 清洗后没有任何午餐或加餐
    """
    role = UserRole(role)
    valid_dates = set(week_dates(week_start))
    children = set(known_children) if known_children is not None else None

    slots: Dict[Tuple[date, Optional[str]], Dict[str, Any]] = {}
    dropped = 0

    for raw in raw_selections or []:
        entry = _to_mapping(raw)
        if entry is None:
            dropped += 1
            continue

        day = _parse_date(_field(entry, "date"))
        if day is None or day not in valid_dates:
            dropped += 1
            continue

        lunch = _parse_item(_field(entry, "lunch_item"), role, ItemCategory.LUNCH, price_table)
        snack = _parse_item(_field(entry, "snack_item"), role, ItemCategory.SNACK, price_table)
        if lunch is None and snack is None:
            dropped += 1
            continue

        if role == UserRole.GUARDIAN:
            child_ref = _field(entry, "child_ref")
            child_ref = str(child_ref).strip() if child_ref is not None else ""
            if not child_ref or (children is not None and child_ref not in children):
                dropped += 1
                continue
        else:
            child_ref = None

        slot = slots.setdefault((day, child_ref), {"lunch_item": None, "snack_item": None})
        if lunch is not None:
            slot["lunch_item"] = lunch
        if snack is not None:
            slot["snack_item"] = snack

    if dropped:
        logger.debug("Dropped %d incomplete selection entries", dropped)

    if not slots:
        raise ValidationError(EMPTY_SELECTION_MESSAGE)

    return [
        DaySelection(date=day, child_ref=child_ref, **items)
        for (day, child_ref), items in slots.items()
    ]
