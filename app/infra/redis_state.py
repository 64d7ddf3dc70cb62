from __future__ import annotations

import os
from functools import lru_cache

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def latest_location_key(tenant_id: str, order_id: str) -> str:
    return f"order-location:{tenant_id}:{order_id}"


def tracking_session_key(device_id: str, name: str) -> str:
    return f"tracking:{device_id}:{name}"


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
