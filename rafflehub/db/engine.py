from __future__ import annotations

import logging
import time
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from ..errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False) -> Engine:
    engine = create_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=not database_url.startswith("sqlite"),
    )
    if database_url.startswith("sqlite"):
        # ensure FK constraints (and ON DELETE CASCADE) are enforced on SQLite
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,  # Read models are serialized after commit
        future=True,
    )


def connect_with_retry(
    engine: Engine,
    retries: int = 5,
    delay: float = 5.0,
    *,
    sleep=time.sleep,
) -> None:
    """Check that the database answers, retrying a bounded number of times.

    Only meant for process startup; request handlers never retry.

    Raises
    ------
    UpstreamUnavailableError
        If every attempt fails.
    """
    attempts = max(1, retries)
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database reachable (attempt %d/%d)", attempt, attempts)
            return
        except OperationalError as e:
            last_error = e
            logger.warning(
                "Database connection attempt %d/%d failed: %s", attempt, attempts, e
            )
            if attempt < attempts:
                sleep(delay)

    raise UpstreamUnavailableError(
        f"Database unreachable after {attempts} attempts: {last_error}"
    )


def ping(engine: Engine) -> bool:
    """Return ``True`` when a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        logger.warning("Database ping failed", exc_info=True)
        return False
