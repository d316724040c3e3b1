from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from app.core.config import settings
from app.core.errors import AliasTaken, NotFound, TransactionFailed
from app.core.logger import logger
from app.models.user import User
from app.utils.time import utcnow


def build_engine(uri: str, **kwargs):
    if uri.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(uri, **kwargs)


engine = build_engine(str(settings.DATABASE_URI))


def create_db_and_tables(bind=None) -> None:
    """Create database tables."""
    # Registers every table on the metadata before create_all
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_db_session() -> Generator[Session, None, None]:
    """Get database session."""
    with Session(engine) as session:
        yield session


def init_db() -> None:
    """Initialize database with tables and default data."""
    create_db_and_tables()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """
    Run a unit of work as one transaction.

    Commits when the block exits cleanly, rolls back on any exception.
    Database failures surface as TransactionFailed; a unique alias
    violation raced past the pre-check surfaces as AliasTaken.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if "alias" in str(exc.orig).lower():
            raise AliasTaken("Alias already exists") from exc
        logger.warning(f"Transaction rolled back on integrity error: {exc.orig}")
        raise TransactionFailed("Operation could not be completed") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning(f"Transaction rolled back: {exc}")
        raise TransactionFailed("Operation could not be completed") from exc
    except Exception:
        session.rollback()
        raise


def lock_user(session: Session, user_id: int) -> User:
    """
    Take the per-user write lock that serialises cap and default checks.

    Touching the owner row is a write, so a second writer for the same user
    waits until this transaction ends: a row lock on PostgreSQL, the database
    write lock on SQLite.
    """
    touched = session.exec(
        update(User)
        .where(User.id == user_id)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    if not touched:
        raise NotFound("User not found")
    return session.get(User, user_id)
