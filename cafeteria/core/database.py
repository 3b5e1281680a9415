"""
数据库连接和管理模块
提供 DuckDB 连接、表结构初始化和事务上下文
"""

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional

import duckdb

from .exceptions import ConcurrencyError, PersistenceError
from ..config.settings import settings

logger = logging.getLogger(__name__)

# 完整的表结构定义
SCHEMA_SQL = r"""
CREATE TABLE IF NOT EXISTS orders (
  order_id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  user_role TEXT CHECK(user_role IN ('guardian','staff')) NOT NULL,
  week_start DATE NOT NULL,
  selections_json TEXT NOT NULL,
  total INTEGER NOT NULL,
  status TEXT CHECK(status IN ('pending','processing_payment','paid','cancelled')) NOT NULL,
  payment_transaction_id TEXT,
  metadata_json TEXT,
  version INTEGER NOT NULL DEFAULT 1,
  created_at TIMESTAMP NOT NULL,
  updated_at TIMESTAMP NOT NULL,
  paid_at TIMESTAMP,
  cancelled_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id);
CREATE INDEX IF NOT EXISTS idx_orders_week ON orders(week_start);

CREATE SEQUENCE IF NOT EXISTS logs_id_seq;
CREATE TABLE IF NOT EXISTS logs (
  log_id INTEGER DEFAULT nextval('logs_id_seq') PRIMARY KEY,
  user_id TEXT,
  actor_id TEXT,
  order_id TEXT,
  action TEXT,
  detail_json TEXT,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_logs_order ON logs(order_id);
CREATE INDEX IF NOT EXISTS idx_logs_action ON logs(action);
"""


def _db_path_from_url(db_url: str) -> str:
    if db_url.startswith("duckdb://"):
        return db_url.replace("duckdb://", "", 1)
    return db_url


class DatabaseManager:
    """数据库管理器，封装所有数据库操作"""

    def __init__(self, db_path: Optional[str] = None):
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self.db_path = db_path or _db_path_from_url(settings.database_url)

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """获取数据库连接（首次访问时建表）"""
        with self._lock:
            if self._connection is None:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                try:
                    self._connection = duckdb.connect(self.db_path)
                    self._connection.execute(SCHEMA_SQL)
                except duckdb.Error as e:
                    self._connection = None
                    raise PersistenceError(f"Failed to initialize database: {e}")
            return self._connection

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        return self.connection

    def init_database(self):
        """初始化数据库"""
        self.connection.execute(SCHEMA_SQL)

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        数据库事务上下文管理器

        持有进程内的可重入锁，异常时回滚；业务异常原样抛出，
        驱动层异常统一转换为 PersistenceError。
        """
        with self._lock:
            conn = self.connection
            conn.execute("BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception as e:
                try:
                    conn.execute("ROLLBACK")
                except duckdb.Error:
                    logger.exception("Rollback failed")
                if isinstance(e, (PersistenceError, ConcurrencyError)) or not isinstance(e, duckdb.Error):
                    raise
                if "conflict" in str(e).lower():
                    raise ConcurrencyError("order was modified concurrently, please retry")
                raise PersistenceError(f"Database operation failed: {e}")

    def execute_query(self, query: str, params: list = None) -> list:
        """执行查询并返回结果"""
        with self._lock:
            try:
                return self.connection.execute(query, params or []).fetchall()
            except duckdb.Error as e:
                raise PersistenceError(f"Query execution failed: {e}")

    def execute_one(self, query: str, params: list = None) -> Optional[tuple]:
        """执行查询并返回单条结果"""
        with self._lock:
            try:
                return self.connection.execute(query, params or []).fetchone()
            except duckdb.Error as e:
                raise PersistenceError(f"Query execution failed: {e}")

    def write_log(self, action: str, detail: Any, user_id: Optional[str] = None,
                  actor_id: Optional[str] = None, order_id: Optional[str] = None):
        """写入操作审计日志"""
        self.execute_query(
            "INSERT INTO logs(user_id, actor_id, order_id, action, detail_json) VALUES (?,?,?,?,?)",
            [user_id, actor_id, order_id, action, json.dumps(detail, default=str)]
        )

    def close(self):
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


# 全局数据库管理器实例
db_manager = DatabaseManager()
