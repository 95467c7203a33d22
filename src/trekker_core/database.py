"""Database engine and session management.

One SQLite file holds the whole store. Connections run in WAL mode so
readers never block each other; write sessions open with BEGIN IMMEDIATE
so a second writer waits on SQLite's file lock (up to busy_timeout) instead
of failing halfway through a command.
"""
import logging
import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings, get_settings
from .models import Base

logger = logging.getLogger("trekker-core.database")

WRITE_OPTION = "trekker_write"


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def _ensure_parent_dir(url: str) -> None:
    """Create the directory holding the store file if needed."""
    if url.startswith("sqlite:///") and not _is_memory_url(url):
        db_dir = os.path.dirname(url.replace("sqlite:///", "", 1))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)


def create_store_engine(settings: Optional[Settings] = None, url: Optional[str] = None) -> Engine:
    """
    Create an engine for the store file.

    Args:
        settings: Settings to read database_url and busy_timeout_ms from
        url: Explicit database URL (overrides settings.database_url)

    Returns:
        Engine with SQLite pragmas and transaction hooks installed
    """
    settings = settings or get_settings()
    url = url or settings.database_url
    if not url.startswith("sqlite"):
        raise ValueError(f"Trekker stores must be SQLite files, got: {url}")

    _ensure_parent_dir(url)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if _is_memory_url(url):
        # One shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool

    engine = create_engine(url, echo=False, **kwargs)
    busy_timeout_ms = settings.busy_timeout_ms

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see _begin below)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get(WRITE_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    logger.debug(f"Created store engine for {url}")
    return engine


def create_session_factories(engine: Engine) -> tuple[sessionmaker, sessionmaker]:
    """
    Build (read, write) session factories sharing one connection pool.

    Write sessions carry an execution option that makes the begin hook
    take the SQLite write lock up front.
    """
    read_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    write_factory = sessionmaker(
        bind=engine.execution_options(**{WRITE_OPTION: True}),
        autoflush=False,
        expire_on_commit=False,
    )
    return read_factory, write_factory


def init_db(engine: Engine) -> None:
    """Create all tables (and append-only triggers) that do not exist yet."""
    Base.metadata.create_all(engine)
    logger.info(f"Initialized store schema at {engine.url}")
