"""
历史订单导入
旧系统的部分订单没有结构化的选餐数据，只有一段描述文本，例如：

    2024-03-04 Almuerzo: Pollo (child-1); 2024-03-05 Snack: Fruta

这里按片段解析出 DaySelection，解析结果带置信度，
与正常下单使用的 sanitize_selections 完全分开。
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.exceptions import ValidationError
from ..core.timestamps import parse_stored_timestamp
from ..models.order import DaySelection, ItemCategory, MenuItemSnapshot, NewOrder, OrderStatus
from ..models.user import UserRole
from .order_total import compute_total
from .pricing import PriceTable
from .selection_sanitizer import sanitize_selections

logger = logging.getLogger(__name__)

_FRAGMENT_SPLIT = re.compile(r"[;\n]+")
_FRAGMENT_PATTERN = re.compile(
    r"(?P<date>\d{4}-\d{2}-\d{2})\s*[-,]?\s*"
    r"(?P<category>almuerzo|lunch|colaci[oó]n|snack)\s*:?\s*"
    r"(?P<name>[^()]*?)\s*"
    r"(?:\((?P<child>[^)]+)\))?\s*$",
    re.IGNORECASE,
)

_CATEGORY_WORDS = {
    "almuerzo": ItemCategory.LUNCH,
    "lunch": ItemCategory.LUNCH,
    "colacion": ItemCategory.SNACK,
    "colación": ItemCategory.SNACK,
    "snack": ItemCategory.SNACK,
}

# 旧系统状态 -> 订单状态
_LEGACY_STATUS = {
    "pending": OrderStatus.PENDING,
    "pendiente": OrderStatus.PENDING,
    "processing_payment": OrderStatus.PROCESSING_PAYMENT,
    "processing": OrderStatus.PROCESSING_PAYMENT,
    "paid": OrderStatus.PAID,
    "pagado": OrderStatus.PAID,
    "completed": OrderStatus.PAID,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelado": OrderStatus.CANCELLED,
}

_LEGACY_ROLE = {
    "guardian": UserRole.GUARDIAN,
    "apoderado": UserRole.GUARDIAN,
    "parent": UserRole.GUARDIAN,
    "staff": UserRole.STAFF,
    "funcionario": UserRole.STAFF,
}


@dataclass
class LegacyImportResult:
    """描述文本的解析结果"""
    selections: List[DaySelection] = field(default_factory=list)
    confidence: float = 0.0
    unparsed_fragments: List[str] = field(default_factory=list)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "item"


def _first_value(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


class LegacyOrderImporter:
    """从历史订单记录推断选餐"""

    def __init__(self, price_table: PriceTable):
        self.price_table = price_table

    def parse(self, description: Optional[str], role: UserRole,
              default_child: Optional[str] = None) -> LegacyImportResult:
        """
        解析描述文本

        Args:
            description: 描述文本，片段以分号或换行分隔
            role: 下单角色，决定快照价格和是否需要孩子ID
            default_child: 片段没有写孩子时使用的孩子ID（家长只有一个孩子时）

        Returns:
            LegacyImportResult: confidence 为成功解析的片段比例
        """
        role = UserRole(role)
        fragments = [f.strip() for f in _FRAGMENT_SPLIT.split(description or "") if f.strip()]
        if not fragments:
            return LegacyImportResult()

        slots: Dict[Tuple[date, Optional[str]], Dict[str, MenuItemSnapshot]] = {}
        unparsed: List[str] = []

        for fragment in fragments:
            match = _FRAGMENT_PATTERN.search(fragment)
            if not match:
                unparsed.append(fragment)
                continue
            try:
                day = date.fromisoformat(match.group("date"))
            except ValueError:
                unparsed.append(fragment)
                continue

            category = _CATEGORY_WORDS[match.group("category").lower()]
            name = (match.group("name") or "").strip(" :-") or category.value.title()

            if role == UserRole.GUARDIAN:
                child_ref = (match.group("child") or "").strip() or default_child
                if not child_ref:
                    unparsed.append(fragment)
                    continue
            else:
                child_ref = None

            item = MenuItemSnapshot(
                code=f"legacy-{_slug(name)}",
                name=name,
                price=self.price_table.price(role, category),
            )
            slots.setdefault((day, child_ref), {})[f"{category.value}_item"] = item

        selections = [
            DaySelection(date=day, child_ref=child_ref, **items)
            for (day, child_ref), items in slots.items()
        ]
        confidence = round((len(fragments) - len(unparsed)) / len(fragments), 2)
        if unparsed:
            logger.debug("Legacy description left %d unparsed fragments", len(unparsed))
        return LegacyImportResult(selections, confidence, unparsed)

    def build_order(self, record: Mapping[str, Any]) -> NewOrder:
        """
        把一条历史记录转换为待写入的订单

        有结构化 selections 时走正常清洗，否则解析 description。
        总价按角色价格重新计算，原总价保存在 metadata.legacy_total。

        Raises:
            ValidationError: 缺少用户、无法确定订餐周或没有任何餐品
        """
        user_id = _first_value(record, "user_id", "userId")
        if not user_id:
            raise ValidationError("legacy record has no user")
        raw_role = str(_first_value(record, "user_role", "userType", "role") or "guardian").strip().lower()
        if raw_role not in _LEGACY_ROLE:
            raise ValidationError(f"unknown legacy role: {raw_role}")
        role = _LEGACY_ROLE[raw_role]

        metadata: Dict[str, Any] = {"source": "legacy_import"}
        legacy_id = _first_value(record, "id", "order_id", "orderId")
        if legacy_id is not None:
            metadata["legacy_id"] = str(legacy_id)
        legacy_total = _first_value(record, "total")
        if legacy_total is not None:
            metadata["legacy_total"] = legacy_total

        week_start = self._week_start(record)
        raw_selections = record.get("selections")
        if raw_selections:
            if week_start is None:
                raise ValidationError("legacy record has no week")
            selections = sanitize_selections(raw_selections, week_start, role, self.price_table)
            metadata["confidence"] = 1.0
        else:
            children = record.get("children") or []
            default_child = _first_value(record, "child_ref", "childId")
            if default_child is None and len(children) == 1:
                child = children[0]
                default_child = child.get("id") if isinstance(child, Mapping) else str(child)
            result = self.parse(_first_value(record, "description", "items_description"), role, default_child)
            if not result.selections:
                raise ValidationError("legacy record has no recognizable items")
            selections = result.selections
            metadata["confidence"] = result.confidence
            if result.unparsed_fragments:
                metadata["unparsed_fragments"] = result.unparsed_fragments
            if week_start is None:
                first = min(s.date for s in selections)
                week_start = first - timedelta(days=first.weekday())
            week_end = week_start + timedelta(days=6)
            selections = [s for s in selections if week_start <= s.date <= week_end]
            if not selections:
                raise ValidationError("legacy record has no items inside its week")

        status = _LEGACY_STATUS.get(str(record.get("status") or "pending").strip().lower(), OrderStatus.PENDING)
        paid_at = parse_stored_timestamp(_first_value(record, "paid_at", "paidAt"))
        cancelled_at = parse_stored_timestamp(_first_value(record, "cancelled_at", "cancelledAt"))
        if status != OrderStatus.PAID:
            paid_at = None
        if status != OrderStatus.CANCELLED:
            cancelled_at = None

        transaction_id = _first_value(record, "payment_transaction_id", "paymentId")
        if transaction_id is not None:
            transaction_id = str(transaction_id)

        return NewOrder(
            user_id=str(user_id),
            user_role=role,
            week_start=week_start,
            selections=selections,
            total=compute_total(selections, role, self.price_table),
            status=status,
            metadata=metadata,
            created_at=parse_stored_timestamp(_first_value(record, "created_at", "createdAt")),
            paid_at=paid_at,
            cancelled_at=cancelled_at,
            payment_transaction_id=transaction_id,
        )

    def _week_start(self, record: Mapping[str, Any]) -> Optional[date]:
        raw = _first_value(record, "week_start", "weekStart")
        if raw is None:
            return None
        if isinstance(raw, str) and len(raw.strip()) == 10:
            try:
                value = date.fromisoformat(raw.strip())
            except ValueError:
                raise ValidationError(f"invalid legacy week: {raw}")
        else:
            parsed = parse_stored_timestamp(raw)
            if parsed is None:
                raise ValidationError(f"invalid legacy week: {raw}")
            value = parsed.date()
        return value - timedelta(days=value.weekday())
