# model/notifications/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...config import NOTIFY_BACKEND
from ._redis import NotificationLog as RedisNotificationLog
from ._sql import NotificationLog as SqlNotificationLog

BACKEND = NOTIFY_BACKEND  # 'sql' | 'redis'

NotificationLog = (
    RedisNotificationLog if BACKEND == "redis" else SqlNotificationLog
)


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600,
              backend: Optional[str] = None):
    backend = backend or BACKEND
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "NotificationLog(redis) requires r=redis.Redis"
            )
        return RedisNotificationLog(r=r, ttl_seconds=ttl_seconds)
    elif backend == "sql":
        if db is None:
            raise RuntimeError("NotificationLog(sql) requires db=AsyncSession")
        return SqlNotificationLog(db=db)
    raise RuntimeError(f"unknown notification backend: {backend!r}")


__all__ = ["NotificationLog", "new_store", "BACKEND"]
