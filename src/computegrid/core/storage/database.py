import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Mapping, Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///computegrid.db"

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_grid_engine(database_url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> Engine:
    """
    Build the shared engine.

    PostgreSQL gets real row locks (FOR UPDATE [SKIP LOCKED]). SQLite has no
    row locks, so every transaction starts with BEGIN IMMEDIATE and writers
    serialize on the database lock instead.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            # let the "begin" hook below own transaction start
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables (idempotent)."""
    from computegrid.core.storage import models  # noqa: F401  registers tables

    Base.metadata.create_all(bind=engine)
    logger.info(f"Schema ready on {engine.url.render_as_string(hide_password=True)}")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    One unit of work: commit on success, roll back on any error.

    Nothing done inside the block is visible to other connections unless the
    whole block succeeds.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def insert_ignore(session: Session, model, values: Mapping[str, Any], conflict_columns) -> None:
    """INSERT ... ON CONFLICT DO NOTHING for PostgreSQL and SQLite."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"insert_ignore not supported on {dialect}")

    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    session.execute(stmt)
