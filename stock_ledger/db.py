from __future__ import annotations

import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./stock_ledger.db")


class Base(DeclarativeBase):
    pass


def _serialize_sqlite_writers(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so two connections can both
    read a stock row and then deadlock on the upgrade. BEGIN IMMEDIATE makes
    the second writer wait on the busy timeout instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        new_engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )
        _serialize_sqlite_writers(new_engine)
        return new_engine
    return create_engine(
        url,
        pool_pre_ping=True,
    )


def make_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)


def get_session() -> Session:
    return SessionLocal()
