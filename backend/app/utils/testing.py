"""Helpers shared by the test modules: in-memory database, users, clock."""

from datetime import datetime, timedelta

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from app.core.db import create_db_and_tables
from app.models.user import User
from app.utils.time import utcnow


def memory_engine():
    """Fresh SQLite database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(bind=engine)
    return engine


def make_user(session: Session, email: str, first_name: str = "Test") -> User:
    user = User(email=email, first_name=first_name, last_name="User")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now
