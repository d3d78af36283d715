from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

load_dotenv()

DATABASE_URL_ENV_VARS = ("WASTEWATCH_DATABASE_URL", "DATABASE_URL", "SQLALCHEMY_DATABASE_URL")


def _get_database_url() -> str:
    for name in DATABASE_URL_ENV_VARS:
        database_url = os.getenv(name)
        if database_url:
            return database_url
    raise RuntimeError(
        "One of %s must be set to create the database engine." % ", ".join(DATABASE_URL_ENV_VARS)
    )


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
    built = create_engine(database_url, future=True, connect_args=connect_args)
    if is_sqlite:
        # ondelete=CASCADE on alerts/receipts only holds with the pragma on
        event.listen(built, "connect", _enable_sqlite_foreign_keys)
    return built


DATABASE_URL = _get_database_url()
engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for scripts: commit on success, roll back on error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
