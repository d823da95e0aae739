import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Hosted Postgres providers hand out libpq-style URLs; we always talk psycopg v3.
_PSYCOPG3 = "postgresql+psycopg://"
_PG_ALIASES = ("postgresql+psycopg2://", "postgresql://", "postgres://")

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def _normalize_url(url: str) -> str:
    if not url or url.startswith(_PSYCOPG3):
        return url
    for alias in _PG_ALIASES:
        if url.startswith(alias):
            return _PSYCOPG3 + url[len(alias):]
    return url


def is_postgres() -> bool:
    return engine is not None and engine.dialect.name == "postgresql"


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # TestClient runs the app on a worker thread
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db() -> None:
    """Create the engine and session factory from DATABASE_URL, then the tables.

    Leaves everything unset when DATABASE_URL is empty; routes that need the
    database answer 503 in that case. Calling it twice is harmless.
    """
    global engine, SessionLocal
    if engine is not None:
        return
    raw = os.getenv("DATABASE_URL", "").strip()
    if not raw:
        logger.info("db: DATABASE_URL not set; database-backed routes will return 503")
        return

    engine = _create_engine(_normalize_url(raw))
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    if is_postgres():
        try:
            with engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        except Exception as e:
            logger.warning("db: pgvector extension unavailable: %s", e)

    from preik.db.models import Base  # noqa: WPS433 (models import this module)

    Base.metadata.create_all(engine)
    logger.info("db: ready (dialect=%s)", engine.dialect.name)


@contextmanager
def db_session() -> Iterator[Session]:
    """Unit of work: commit on clean exit, roll back and re-raise otherwise."""
    if SessionLocal is None:
        raise RuntimeError("database is not configured; set DATABASE_URL and call init_db()")
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
