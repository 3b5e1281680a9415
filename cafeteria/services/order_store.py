"""
订单存储
封装 orders 表的读写：JSON 字段序列化、时间戳规整、
基于 version 列的乐观锁，以及列表查询的短期缓存。
"""

import json
import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.cache import TTLCache
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import ConcurrencyError, OrderNotFoundError, PersistenceError
from ..core.timestamps import parse_stored_timestamp, to_storage, utc_now
from ..config.settings import settings
from ..models.order import (
    NewOrder, Order, OrderFilter, OrderStats, OrderStatus, OPEN_STATUSES,
)
from ..models.user import UserRole

logger = logging.getLogger(__name__)

ORDER_COLUMNS = (
    "order_id, user_id, user_role, week_start, selections_json, total, status, "
    "payment_transaction_id, metadata_json, version, created_at, updated_at, paid_at, cancelled_at"
)

# 版本冲突时的最大写入次数
MAX_WRITE_ATTEMPTS = 3

# update() 允许写入的字段
UPDATABLE_FIELDS = (
    "status", "selections", "total", "metadata",
    "paid_at", "cancelled_at", "payment_transaction_id",
)


def _dump_selections(selections) -> str:
    return json.dumps([
        s.model_dump(mode="json") if hasattr(s, "model_dump") else s
        for s in selections
    ])


def _load_json(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Corrupted JSON column value: %r", raw)
        return default


class OrderStore:
    """订单存储，唯一直接访问 orders 表的组件"""

    def __init__(self, db: Optional[DatabaseManager] = None, cache: Optional[TTLCache] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.db = db or db_manager
        self.cache = cache if cache is not None else TTLCache(settings.order_cache_ttl_seconds)
        self.clock = clock

    # ---- 行映射 ----

    def _row_to_order(self, row: tuple) -> Order:
        (order_id, user_id, user_role, week_start, selections_json, total, status,
         transaction_id, metadata_json, version, created_at, updated_at, paid_at, cancelled_at) = row

        if isinstance(week_start, datetime):
            week_start = week_start.date()
        elif not isinstance(week_start, date):
            week_start = date.fromisoformat(str(week_start))

        return Order(
            order_id=order_id,
            user_id=user_id,
            user_role=UserRole(user_role),
            week_start=week_start,
            selections=_load_json(selections_json, []),
            total=int(total),
            status=OrderStatus(status),
            payment_transaction_id=transaction_id,
            metadata=_load_json(metadata_json, {}),
            version=int(version or 1),
            created_at=parse_stored_timestamp(created_at),
            updated_at=parse_stored_timestamp(updated_at),
            paid_at=parse_stored_timestamp(paid_at),
            cancelled_at=parse_stored_timestamp(cancelled_at),
        )

    def _serialize_field(self, name: str, value: Any) -> Any:
        if name == "selections":
            return _dump_selections(value)
        if name == "metadata":
            return json.dumps(value or {}, default=str)
        if name == "status":
            return OrderStatus(value).value
        if name in ("paid_at", "cancelled_at"):
            return to_storage(value)
        return value

    # ---- 写操作 ----

    def create(self, new_order: NewOrder) -> str:
        """
        写入新订单

        Raises:
            PersistenceError: 缺少必填字段、没有任何餐品或数据库写入失败
        """
        if not new_order.user_id or new_order.week_start is None:
            raise PersistenceError("order is missing user or week")
        if not any(s.present_categories() for s in new_order.selections):
            raise PersistenceError("order has no items")

        order_id = uuid.uuid4().hex
        now = self.clock()
        created_at = new_order.created_at or now

        with self.db.transaction() as conn:
            conn.execute(
                f"INSERT INTO orders({ORDER_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                [
                    order_id,
                    new_order.user_id,
                    UserRole(new_order.user_role).value,
                    new_order.week_start,
                    _dump_selections(new_order.selections),
                    int(new_order.total),
                    OrderStatus(new_order.status).value,
                    new_order.payment_transaction_id,
                    json.dumps(new_order.metadata or {}, default=str),
                    1,
                    to_storage(created_at),
                    to_storage(now),
                    to_storage(new_order.paid_at),
                    to_storage(new_order.cancelled_at),
                ]
            )

        self.cache.clear()
        logger.info("Created order %s for user %s (%s, total=%s)",
                    order_id, new_order.user_id, new_order.status.value, new_order.total)
        return order_id

    def update(self, order_id: str, fields: Mapping[str, Any],
               expected_version: Optional[int] = None) -> Order:
        """
        更新订单字段，version 自增

        Args:
            order_id: 订单ID
            fields: 要写入的字段，只允许 UPDATABLE_FIELDS
            expected_version: 期望的当前版本，不一致时抛出 ConcurrencyError

        Raises:
            PersistenceError: 订单不存在
            ConcurrencyError: 版本不匹配
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise PersistenceError(f"fields not updatable: {', '.join(sorted(unknown))}")

        assignments = []
        params: List[Any] = []
        for name, value in fields.items():
            column = {"selections": "selections_json", "metadata": "metadata_json"}.get(name, name)
            assignments.append(f"{column} = ?")
            params.append(self._serialize_field(name, value))

        assignments.append("version = version + 1")
        assignments.append("updated_at = ?")
        params.append(to_storage(self.clock()))

        sql = f"UPDATE orders SET {', '.join(assignments)} WHERE order_id = ?"
        params.append(order_id)
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)
        sql += " RETURNING order_id"

        with self.db.transaction() as conn:
            updated = conn.execute(sql, params).fetchone()
            if updated is None:
                exists = conn.execute(
                    "SELECT version FROM orders WHERE order_id = ?", [order_id]
                ).fetchone()
                if exists is None:
                    raise PersistenceError(f"order not found: {order_id}", details={"order_id": order_id})
                raise ConcurrencyError(
                    "order was modified concurrently, please retry",
                    details={"order_id": order_id, "expected_version": expected_version,
                             "current_version": exists[0]}
                )

        self.cache.clear()
        if "status" in fields:
            logger.info("Order %s status -> %s", order_id, OrderStatus(fields["status"]).value)
        return self.get_by_id(order_id)

    def modify(self, order_id: str, build: Callable[[Order], Optional[Dict[str, Any]]],
               max_attempts: int = MAX_WRITE_ATTEMPTS) -> Tuple[Order, Order]:
        """
        读取订单、由 build 计算要写入的字段，再按版本条件写入

        版本冲突时重新读取并重试。build 返回空表示无需写入。

        Returns:
            Tuple[Order, Order]: (写入前, 写入后)，未写入时两者为同一对象

        Raises:
            OrderNotFoundError: 订单不存在
            ConcurrencyError: 重试次数用尽
        """
        for attempt in range(1, max_attempts + 1):
            order = self.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            fields = build(order)
            if not fields:
                return order, order
            try:
                return order, self.update(order_id, fields, expected_version=order.version)
            except ConcurrencyError:
                if attempt == max_attempts:
                    raise
                logger.info("Version conflict on order %s, retrying (%d/%d)", order_id, attempt, max_attempts)
        raise ConcurrencyError("order was modified concurrently, please retry", details={"order_id": order_id})

    # ---- 读操作 ----

    def get_by_id(self, order_id: str) -> Optional[Order]:
        row = self.db.execute_one(f"SELECT {ORDER_COLUMNS} FROM orders WHERE order_id = ?", [order_id])
        return self._row_to_order(row) if row else None

    def get_by_user_and_week(self, user_id: str, week_start: date) -> Optional[Order]:
        """该用户该周最近一笔未完结（pending / processing_payment）的订单"""
        orders = self.list_by_filter(OrderFilter(
            user_id=user_id, week_start=week_start, statuses=list(OPEN_STATUSES)
        ))
        return orders[0] if orders else None

    def list_by_filter(self, order_filter: Optional[OrderFilter] = None) -> List[Order]:
        """按条件查询订单，按创建时间倒序"""
        order_filter = order_filter or OrderFilter()
        key = order_filter.cache_key()
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        conditions = []
        params: List[Any] = []
        if order_filter.user_id:
            conditions.append("user_id = ?")
            params.append(order_filter.user_id)
        if order_filter.week_start:
            conditions.append("week_start = ?")
            params.append(order_filter.week_start)
        if order_filter.user_role:
            conditions.append("user_role = ?")
            params.append(order_filter.user_role.value)
        if order_filter.statuses:
            conditions.append(f"status IN ({', '.join('?' for _ in order_filter.statuses)})")
            params.extend(s.value for s in order_filter.statuses)
        if order_filter.date_range:
            conditions.append("created_at BETWEEN ? AND ?")
            params.extend([to_storage(order_filter.date_range.start),
                           to_storage(order_filter.date_range.end)])

        sql = f"SELECT {ORDER_COLUMNS} FROM orders"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, order_id"

        orders = [self._row_to_order(row) for row in self.db.execute_query(sql, params)]
        self.cache.set(key, orders)
        return list(orders)

    def stats(self, order_filter: Optional[OrderFilter] = None) -> OrderStats:
        """订单统计，收入只计 paid 订单"""
        orders = self.list_by_filter(order_filter)
        by_status: Dict[str, int] = {s.value: 0 for s in OrderStatus}
        revenue = 0
        paid_count = 0
        for order in orders:
            by_status[order.status.value] += 1
            if order.status == OrderStatus.PAID:
                revenue += order.total
                paid_count += 1
        return OrderStats(
            total_orders=len(orders),
            total_revenue=revenue,
            average_order_value=round(revenue / paid_count, 2) if paid_count else 0.0,
            orders_by_status=by_status,
        )

    def log_event(self, action: str, detail: Any, order_id: Optional[str] = None,
                  user_id: Optional[str] = None, actor_id: Optional[str] = None):
        """写入审计日志"""
        self.db.write_log(action, detail, user_id=user_id, actor_id=actor_id, order_id=order_id)
