import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("PENDINGBOOKING_BACKEND", "redis").lower()  # redis | sql

# expired records stay readable this long so callers get 410, not 404
GRACE_SECONDS = int(os.getenv("PENDING_BOOKING_GRACE_SECONDS", "3600"))

from ._redis import PendingBookingStore as RedisPendingBookingStore  # noqa
from ._sql import PendingBookingStore as SqlPendingBookingStore  # noqa
from ._sql import create_schema  # noqa


def new_store(*, r: Optional[redis.Redis] = None,
              sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              grace_seconds: int = GRACE_SECONDS,
              backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "sql":
        if sessions is None:
            raise RuntimeError(
                "PendingBookingStore(sql) requires sessions=async_sessionmaker"
            )
        if gated is None:
            raise RuntimeError(
                "PendingBookingStore(sql) requires gated=Gated"
            )
        return SqlPendingBookingStore(sessions=sessions,
                                      grace_seconds=grace_seconds,
                                      gated=gated)
    if r is None:
        raise RuntimeError(
            "PendingBookingStore(redis) requires r=redis.Redis"
        )
    return RedisPendingBookingStore(r=r, grace_seconds=grace_seconds)


__all__ = [
    "RedisPendingBookingStore",
    "SqlPendingBookingStore", "create_schema", "new_store", "BACKEND",
    "GRACE_SECONDS",
]
