"""
Resume Pipeline — Shared Redis Client

Lazy process-wide `redis.asyncio` client. Returns None when no REDIS_URL is
configured, so callers fall back to in-process state. Timeouts are short
so a dead Redis degrades to the fallback path quickly instead of stalling
requests.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger("resume_pipeline.redis")

_client: Any = None
_client_lock = threading.Lock()

CONNECT_TIMEOUT_SECONDS = 3.0
SOCKET_TIMEOUT_SECONDS = 3.0


def get_redis_client(redis_url: str = "") -> Any:
    """
    Return the shared client, creating it on first call.

    None when REDIS_URL is unset or the client cannot be constructed.
    Creating the client does not connect; the first command does.
    """
    global _client
    if _client is not None:
        return _client

    redis_url = redis_url or os.environ.get("REDIS_URL", "")
    if not redis_url:
        return None

    with _client_lock:
        if _client is not None:
            return _client
        try:
            _client = aioredis.from_url(
                redis_url,
                socket_connect_timeout=CONNECT_TIMEOUT_SECONDS,
                socket_timeout=SOCKET_TIMEOUT_SECONDS,
                retry_on_timeout=False,
            )
            logger.info("Redis client created")
        except ValueError as e:
            logger.warning("Failed to create Redis client: %s", e)
            return None
    return _client


async def shutdown_redis() -> None:
    """Close the shared client. Safe to call when it was never created."""
    global _client
    client, _client = _client, None
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:  # closing a broken connection
        logger.warning("Error closing Redis client: %s", e)
