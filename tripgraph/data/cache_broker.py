import logging

import redis

logger = logging.getLogger(__name__)


def create_redis_client(config) -> redis.Redis:
    """
    Build the cache tier client.

    Responses are decoded to str so callers never deal with bytes.
    """
    client = redis.Redis.from_url(
        config.url,
        socket_timeout=config.socket_timeout,
        decode_responses=True,
    )
    logger.debug(f"Redis client configured for {config.url}")
    return client
