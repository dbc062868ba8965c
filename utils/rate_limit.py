"""Rate limiting utilities using throttled-py"""
import os
from datetime import timedelta
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger

# Initialize storage - Redis for production, MemoryStore for development
_storage_type = "memory"
try:
    redis_url = os.getenv("REDIS_URL", "").strip()
    if redis_url:
        # RedisStore expects the URL string, not a Redis client object
        storage = store.RedisStore(server=redis_url)
        _storage_type = "redis"
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

PORTAL_LIMIT_PER_MINUTE = int(os.getenv("PORTAL_RATE_LIMIT_PER_MINUTE", "60") or 60)
ADMIN_LIMIT_PER_MINUTE = int(os.getenv("ADMIN_RATE_LIMIT_PER_MINUTE", "120") or 120)

# Family portal / token validation: per client IP, slows down token guessing
portal_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=PORTAL_LIMIT_PER_MINUTE),
    store=storage,
)

# Admin token/distribution endpoints: per client IP
admin_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=ADMIN_LIMIT_PER_MINUTE),
    store=storage,
)


def _check(throttle: Throttled, key: str, label: str) -> tuple[bool, str]:
    try:
        result = throttle.limit(key, cost=1)
        if result.limited:
            return False, "Too many requests. Please try again in a minute."
        return True, ""
    except Exception as ex:
        logger.warning(f"[rate_limit] {label} rate limit check failed: {ex}")
        # Fail open - allow the request if the limiter fails
        return True, ""


def check_portal_rate_limit(ip: str) -> tuple[bool, str]:
    """
    Check if a portal/validation request is allowed for this client IP.

    Returns:
        Tuple of (allowed: bool, error_message: str)
    """
    return _check(portal_throttle, f"portal:{ip}", "Portal")


def check_admin_rate_limit(ip: str) -> tuple[bool, str]:
    return _check(admin_throttle, f"admin:{ip}", "Admin")
