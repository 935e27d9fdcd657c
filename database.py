import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def build_engine(url: str) -> Engine:
    if not _is_sqlite(url):
        return create_engine(url, pool_pre_ping=True)

    ledger_engine = create_engine(url, connect_args={"check_same_thread": False})
    in_memory = make_url(url).database in (None, "", ":memory:")

    @event.listens_for(ledger_engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return ledger_engine


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for background jobs; commits on success."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        logger.exception("session_scope_rollback")
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session, *, commit: bool = True) -> Iterator[Session]:
    """Run a unit of work on an existing session.

    Everything done inside the block is committed together, or rolled back
    together if anything raises. With ``commit=False`` the work is only
    flushed so an enclosing unit of work decides when to commit.
    """
    try:
        yield session
        if commit:
            session.commit()
        else:
            session.flush()
    except Exception:
        session.rollback()
        raise
