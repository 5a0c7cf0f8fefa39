"""Database configuration, session management and transaction helpers."""

import logging
import threading
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from docflow.config import settings
from docflow.exceptions import PreconditionFailedError, TransientStoreError

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(
    DATABASE_URL,
    connect_args=_connect_args(DATABASE_URL),
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all database tables."""
    # Model classes register themselves on Base.metadata at import time
    import docflow.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


class DocumentLocks:
    """Per-document advisory locks for read-evaluate-write sequences.

    Row locks (SELECT ... FOR UPDATE) cover PostgreSQL; SQLite ignores them, so
    workers inside one process also serialise on these locks. An entry lives
    only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, document_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(document_id, threading.Lock())
            self._users[document_id] = self._users.get(document_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[document_id] -= 1
                if not self._users[document_id]:
                    del self._users[document_id]
                    del self._locks[document_id]


document_locks = DocumentLocks()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything written inside the block, or nothing.

    Store-level failures are rolled back and surfaced as TransientStoreError,
    which callers may retry. Any other exception is rolled back and re-raised.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(f"Transaction rejected by a constraint: {exc.orig}")
        raise PreconditionFailedError("The change conflicts with existing data") from exc
    except (OperationalError, DBAPIError) as exc:
        db.rollback()
        logger.error(f"Transaction aborted by the store: {exc}")
        raise TransientStoreError("The transaction could not be completed, retry the request") from exc
    except Exception:
        db.rollback()
        raise
