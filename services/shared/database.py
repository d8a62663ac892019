import logging
import os
from contextlib import contextmanager
from typing import Iterator

from alembic import command
from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from .config import (
    DATABASE_URL,
    DB_MAX_OVERFLOW,
    DB_POOL_RECYCLE_SECONDS,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT_SECONDS,
    RUN_DB_MIGRATIONS,
)


logger = logging.getLogger("database")

# Advisory lock shared by every replica that may run migrations
MIGRATION_LOCK_ID = 0x64657666  # 'devf'

_engine_kwargs = {"pool_pre_ping": True, "future": True}
if DB_POOL_SIZE is not None:
    _engine_kwargs["pool_size"] = int(DB_POOL_SIZE)
if DB_MAX_OVERFLOW is not None:
    _engine_kwargs["max_overflow"] = int(DB_MAX_OVERFLOW)
if DB_POOL_TIMEOUT_SECONDS is not None:
    _engine_kwargs["pool_timeout"] = int(DB_POOL_TIMEOUT_SECONDS)
if DB_POOL_RECYCLE_SECONDS is not None:
    _engine_kwargs["pool_recycle"] = int(DB_POOL_RECYCLE_SECONDS)

ENGINE = create_engine(DATABASE_URL, **_engine_kwargs)
SessionLocal = sessionmaker(bind=ENGINE, autocommit=False, autoflush=False, future=True)

_MIGRATIONS_APPLIED = False


def _alembic_config() -> AlembicConfig:
    services_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

    config = AlembicConfig(os.path.join(services_dir, "alembic.ini"))
    config.set_main_option(
        "script_location",
        os.path.join(services_dir, "shared", "persistence", "alembic"),
    )
    config.set_main_option("sqlalchemy.url", DATABASE_URL)
    return config


def run_migrations_if_needed() -> None:
    """
    Apply Alembic migrations when RUN_DB_MIGRATIONS is enabled

    Replicas serialize on a PostgreSQL transaction advisory lock; the upgrade
    runs at most once per process

    Returns:
        None
    """
    global _MIGRATIONS_APPLIED

    if not RUN_DB_MIGRATIONS:
        logger.debug("RUN_DB_MIGRATIONS is disabled; skipping migrations")
        return

    if _MIGRATIONS_APPLIED:
        return

    logger.info("Applying database migrations")
    try:
        with ENGINE.begin() as conn:
            if ENGINE.dialect.name == "postgresql":
                conn.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": MIGRATION_LOCK_ID})
            command.upgrade(_alembic_config(), "head")
        _MIGRATIONS_APPLIED = True
        logger.info("Database migrations completed")
    except Exception:
        logger.exception("Database migration failed")
        raise


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Transactional session scope: commit on success, roll back on error

    Returns:
        SQLAlchemy Session
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping_database() -> bool:
    """
    Run a trivial query to confirm the database is reachable

    Returns:
        bool
    """
    with ENGINE.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
