# app/db/session.py
"""
Engine and session factory for the ledger store.

The session factory is created once at process start (see app.main) and
passed explicitly into the ledger components, so tests can hand in their
own store.

SQLite connections open every transaction with BEGIN IMMEDIATE. The write
lock is then taken up front, which makes the database lock the single
serialization point for concurrent credits, debits and quota decrements.
"""
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Base

logger = logging.getLogger(__name__)


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the ledger store.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Configured Engine
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if _is_memory_sqlite(database_url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself instead of the driver
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    logger.info(f"Ledger store engine created ({engine.dialect.name})")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create the session factory bound to the ledger engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create ledger tables if they don't exist."""
    Base.metadata.create_all(engine)
    logger.info("Ledger tables created/verified")


def insert_ignore(session: Session, model, values: dict) -> None:
    """
    Insert a row unless one with the same key already exists.

    Uses ON CONFLICT DO NOTHING so concurrent get-or-create calls never
    produce duplicates or raise.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"Unsupported ledger database dialect: {dialect}")
    session.execute(stmt)
