"""Redis connection and read side of the shared session store.

Sessions are created by the auth service; this backend only resolves them.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import redis

from app.core.config import settings
from app.core.logger import logger

redis_client: redis.Redis | None = None


@dataclass
class SessionData:
    """Server-side session data."""

    user_id: int
    csrf_token: str
    created_at: datetime
    last_activity: datetime

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "csrf_token": self.csrf_token,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    @staticmethod
    def from_dict(data: dict) -> SessionData:
        return SessionData(
            user_id=data["user_id"],
            csrf_token=data["csrf_token"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
        )

    def is_expired(self) -> bool:
        expiry_time = self.created_at + timedelta(
            minutes=settings.SESSION_TIMEOUT_MINUTES
        )
        return datetime.now(UTC) > expiry_time


def _get_redis_client() -> redis.Redis:
    """
    Lazy initialization of Redis client.
    Each worker process will initialize on first use.
    """
    global redis_client

    if redis_client is not None:
        return redis_client

    last_error = None
    for attempt in range(1, 6):
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            client.ping()
            redis_client = client
            logger.info(f"Connected to Redis (attempt {attempt})")
            return redis_client
        except redis.RedisError as exc:
            last_error = exc
            logger.warning(f"Redis connection attempt {attempt}/5 failed: {exc}")
            if attempt < 5:
                time.sleep(2.0)

    logger.critical(f"Could not connect to Redis after 5 attempts: {last_error}")
    raise RuntimeError(f"Redis connection failed: {last_error}")


def init_redis() -> None:
    _get_redis_client()


def get_session(session_id: str) -> SessionData | None:
    """
    Get session data by session ID.

    Returns:
        SessionData if valid and not expired, None otherwise
    """
    client = _get_redis_client()
    data = client.get(settings.REDIS_SESSION_PREFIX + session_id)
    if data is None:
        return None

    session_data = SessionData.from_dict(json.loads(data))
    if session_data.is_expired():
        return None
    return session_data
