"""
Rate Limiter Configuration

Supports both in-memory and Redis storage for rate limiting.
Redis is recommended for production (multiple instances).
"""

import logging
import os
from typing import Optional

import redis
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def get_storage_uri() -> Optional[str]:
    """
    Redis storage URI for rate limiting if configured.
    Returns None to use in-memory storage.
    """
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        redis.from_url(redis_url).ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}, using in-memory rate limit storage")
        return None

    logger.info("Redis connected for rate limiting")
    return redis_url


def create_limiter() -> Limiter:
    """
    Create a rate limiter with appropriate storage backend.
    Uses Redis if available, otherwise in-memory.
    """
    storage_uri = get_storage_uri()

    if storage_uri:
        return Limiter(
            key_func=get_real_client_ip,
            storage_uri=storage_uri,
            default_limits=["100/minute"]
        )
    return Limiter(
        key_func=get_real_client_ip,
        default_limits=["100/minute"]
    )


# Global rate limiter instance
limiter = create_limiter()


# ================================
# RATE LIMIT CONFIGURATIONS
# ================================

RATE_LIMITS = {
    # Upstream webhooks - higher limits for integrations
    "webhook": "100/minute",

    # Operator reads and writes
    "booking_read": "100/minute",
    "booking_write": "30/minute",

    # Upstream-heavy operations
    "sync": "10/minute",
    "import": "2/minute",

    # Outbound messaging
    "message_send": "20/minute",

    # Files
    "upload": "30/minute",
    "download": "60/minute",
}
