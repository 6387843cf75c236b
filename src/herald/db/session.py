"""Engine and session factories.

Request handlers receive a session from :func:`get_db`. Delivery passes run
outside a request and open their own through :func:`session_scope`; a pass
started from a request borrows that request's session instead.
"""

from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from herald.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Model modules must be imported so that metadata is populated for migrations.
import herald.models  # noqa: E402,F401


def engine_options(url: str) -> dict[str, Any]:
    """Return driver options for a database URL."""
    if url.startswith("sqlite"):
        # Coordinator passes may run on a different thread than the one that
        # opened the pooled connection.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(
    settings.database_url_sync,
    echo=settings.sql_debug,
    **engine_options(settings.database_url_sync),
)

# SQLite serialises writers, so partition passes must not overlap there.
SUPPORTS_CONCURRENT_PASSES = engine.dialect.name != "sqlite"

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a request-scoped session."""
    with session_scope() as db:
        yield db


@contextmanager
def session_scope() -> Iterator[Session]:
    """Open a session that is rolled back on error and always closed."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def borrowed_session(db: Session) -> Iterator[Session]:
    """Hand an existing session to code that expects a session factory.

    The session is neither committed nor closed on exit; its owner keeps it.
    """
    yield db
