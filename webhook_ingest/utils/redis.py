"""
Shared async Redis client - worker heartbeats and readiness checks.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

HEARTBEAT_KEY_PREFIX = "webhook_ingest:worker_health:"
HEARTBEAT_TTL_SECONDS = 300

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from webhook_ingest.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def write_heartbeat(worker_name: str) -> None:
    """Store a heartbeat timestamp for a background worker. Never raises."""
    try:
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_KEY_PREFIX}{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
