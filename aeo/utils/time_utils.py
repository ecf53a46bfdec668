"""时间与时区工具
- 支持通过 .env 配置自定义时区
- 数据库统一存储去除 tzinfo 的本地时间
"""
from __future__ import annotations

import logging
from datetime import datetime
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_app_timezone() -> ZoneInfo | None:
    """加载应用配置的时区"""
    tz_name = settings.TIMEZONE
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        logger.warning("无法加载时区 %s，已回退到系统时区", tz_name)
        return None


def aware_now() -> datetime:
    """返回带时区信息的当前时间"""
    tz = get_app_timezone()
    if tz is not None:
        return datetime.now(tz)
    return datetime.now().astimezone()


def now() -> datetime:
    """返回适合数据库存储的时间（去除 tzinfo）"""
    return aware_now().replace(tzinfo=None)


def elapsed_seconds(start: datetime | None, end: datetime | None = None) -> float | None:
    """计算两个数据库时间之间的秒数；缺少起点时返回 None"""
    if start is None:
        return None
    return max(0.0, ((end or now()) - start).total_seconds())


__all__ = ["aware_now", "now", "get_app_timezone", "elapsed_seconds"]
