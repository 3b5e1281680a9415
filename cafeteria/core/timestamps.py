"""
时间戳适配
存储层读出的时间字段形态不一：原生 datetime、date、epoch 秒/毫秒、
ISO 字符串、{"seconds", "nanoseconds"} 字典或带 to_datetime() 的对象。
这里统一转换为带 UTC 时区的 datetime，其余代码只处理这一种类型。
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# 大于该值的数字按毫秒处理（约 5138 年的秒数）
_EPOCH_MILLIS_THRESHOLD = 1e11


def utc_now() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(timezone.utc)


def _from_epoch(value: float) -> datetime:
    if abs(value) >= _EPOCH_MILLIS_THRESHOLD:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_seconds_pair(seconds: Any, nanoseconds: Any) -> datetime:
    base = datetime.fromtimestamp(int(seconds), tz=timezone.utc)
    micros = int(nanoseconds or 0) // 1000
    return base.replace(microsecond=micros)


def _from_string(raw: str) -> Optional[datetime]:
    text = raw.strip()
    if not text:
        return None
    try:
        return _from_epoch(float(text))
    except ValueError:
        pass
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return _ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_stored_timestamp(raw: Any) -> Optional[datetime]:
    """
    将存储层的任意时间表示转换为 UTC datetime

    Args:
        raw: 存储层读出的原始值

    Returns:
        datetime: 带 UTC 时区；空值或无法识别的格式返回 None
    """
    if raw is None:
        return None

    if isinstance(raw, datetime):
        return _ensure_utc(raw)

    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)

    if isinstance(raw, bool):
        logger.warning("Unknown timestamp format: %r", raw)
        return None

    if isinstance(raw, (int, float)):
        return _from_epoch(float(raw))

    if isinstance(raw, str):
        parsed = _from_string(raw)
        if parsed is None and raw.strip():
            logger.warning("Unparseable timestamp string: %r", raw)
        return parsed

    if isinstance(raw, dict):
        if "seconds" in raw:
            return _from_seconds_pair(raw["seconds"], raw.get("nanoseconds"))
        if "_seconds" in raw:
            return _from_seconds_pair(raw["_seconds"], raw.get("_nanoseconds"))
        logger.warning("Unknown timestamp mapping: %r", raw)
        return None

    # 第三方时间戳对象
    for method in ("to_datetime", "ToDatetime", "toDate"):
        converter = getattr(raw, method, None)
        if callable(converter):
            return parse_stored_timestamp(converter())

    seconds = getattr(raw, "seconds", None)
    if seconds is not None:
        return _from_seconds_pair(seconds, getattr(raw, "nanos", None) or getattr(raw, "nanoseconds", None))

    logger.warning("Unknown timestamp format: %r", raw)
    return None


def to_storage(value: Optional[datetime]) -> Optional[datetime]:
    """转换为写入 DuckDB TIMESTAMP 列的无时区 UTC 时间"""
    if value is None:
        return None
    return _ensure_utc(value).replace(tzinfo=None)
