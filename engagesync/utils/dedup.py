"""
Event deduplication - Redis-based with a 48-hour window.
SendGrid retries webhook deliveries that time out or fail, so the same
sg_event_id can arrive more than once. Disabled unless EVENT_DEDUP_ENABLED.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Dedup window in seconds (48 hours)
DEDUP_WINDOW_SECONDS = 172800

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection. Raises when REDIS_URL is not configured."""
    global _redis_client
    if _redis_client is None:
        from engagesync.config import get_settings
        redis_url = get_settings().redis_url
        if not redis_url:
            raise RuntimeError("REDIS_URL not configured")
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(redis_url, decode_responses=True)
    return _redis_client


def make_event_key(event_id: str) -> str:
    return f"engagesync:event_seen:{event_id.strip()}"


async def is_duplicate_event(event_id: Optional[str]) -> bool:
    """
    Check whether this provider event id was already accepted.
    If not, marks it in Redis so later deliveries are recognised.

    Events without an id are never duplicates. Redis failures fail-open.
    """
    if not event_id:
        return False

    try:
        redis = await get_redis()
        # SET NX = only set if not exists. Returns True if set (new), None if exists (dupe).
        was_set = await redis.set(make_event_key(event_id), "1", nx=True, ex=DEDUP_WINDOW_SECONDS)
        if was_set:
            return False
        logger.debug("Duplicate event skipped: %s", event_id)
        return True
    except Exception as e:
        # Redis failure should NOT block ingestion - assume not duplicate
        logger.warning("Redis dedup check failed: %s. Assuming not duplicate.", str(e))
        return False


async def forget_event(event_id: Optional[str]) -> None:
    """Drop the seen-marker for an event that was not queued, so a retry is accepted."""
    if not event_id:
        return

    try:
        redis = await get_redis()
        await redis.delete(make_event_key(event_id))
    except Exception as e:
        logger.warning("Redis dedup rollback failed for %s: %s", event_id, str(e))


async def close_redis() -> None:
    """Close the shared client, if one was opened. Called at shutdown."""
    global _redis_client
    if _redis_client is None:
        return

    client, _redis_client = _redis_client, None
    try:
        await client.aclose()
    except Exception as e:
        logger.warning("Redis close failed: %s", str(e))
