"""Short-lived Redis locks so only one worker runs a given background job."""

import secrets

import redis

from app.core.logger import logger
from app.core.sessions import _get_redis_client

LOCK_PREFIX = "lock:"

# Delete only if the caller still owns the lock
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def acquire_lock(name: str, ttl_seconds: int) -> str | None:
    """
    Return an owner token, or None when someone else holds the lock.

    Raises redis.RedisError when Redis cannot be reached.
    """
    token = secrets.token_urlsafe(16)
    acquired = _get_redis_client().set(
        LOCK_PREFIX + name, token, nx=True, ex=ttl_seconds
    )
    return token if acquired else None


def release_lock(name: str, token: str) -> bool:
    try:
        released = _get_redis_client().eval(
            _RELEASE_SCRIPT, 1, LOCK_PREFIX + name, token
        )
    except redis.RedisError as exc:
        logger.warning(f"Could not release lock {name}: {exc}")
        return False
    return bool(released)
