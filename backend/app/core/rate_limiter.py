"""Per-user rate limiting for the expensive identity endpoints."""

from datetime import UTC, datetime, timedelta

from fastapi import HTTPException, status

from app.core.sessions import _get_redis_client


def get_rate_limits(scope: str) -> dict:
    return {
        "search": {"max": 50, "window": 60},
        "alias_check": {"max": 30, "window": 60},
        "bulk": {"max": 10, "window": 60},
        "import": {"max": 5, "window": 300},
    }.get(scope, {"max": 100, "window": 60})


class RateLimiter:
    @staticmethod
    def check(scope: str, identifier: str) -> tuple[bool, int, datetime | None]:
        limits = get_rate_limits(scope)
        client = _get_redis_client()
        key = f"ratelimit:{scope}:{identifier}"

        pipe = client.pipeline()
        pipe.get(key)
        pipe.ttl(key)
        current_str, ttl = pipe.execute()

        current = int(current_str or 0)
        remaining = max(0, limits["max"] - current)
        reset = datetime.now(UTC) + timedelta(seconds=ttl) if ttl > 0 else None

        return current >= limits["max"], remaining, reset

    @staticmethod
    def record(scope: str, identifier: str) -> None:
        limits = get_rate_limits(scope)
        client = _get_redis_client()
        key = f"ratelimit:{scope}:{identifier}"
        client.pipeline().incr(key).expire(key, limits["window"]).execute()


def enforce_rate_limit(scope: str, user_id: int) -> None:
    """Record one hit and raise 429 once the window is exhausted."""
    limited, _, reset = RateLimiter.check(scope, str(user_id))
    if limited:
        headers = {}
        if reset is not None:
            seconds = max(1, int((reset - datetime.now(UTC)).total_seconds()))
            headers["Retry-After"] = str(seconds)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests, try again later",
            headers=headers,
        )
    RateLimiter.record(scope, str(user_id))
