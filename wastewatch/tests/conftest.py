import os
import pathlib
import sys
import tempfile
from datetime import date, datetime, timezone

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))

DATABASE_URL_ENV_VARS = ("WASTEWATCH_DATABASE_URL", "DATABASE_URL", "SQLALCHEMY_DATABASE_URL")


def pytest_configure():
    if any(os.getenv(name) for name in DATABASE_URL_ENV_VARS):
        return
    temp_dir = tempfile.mkdtemp(prefix="wastewatch-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


@pytest.fixture()
def db_engine():
    from wastewatch.app import models  # noqa: F401
    from wastewatch.app.db import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(db_engine):
    from wastewatch.app.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def api_client(db_engine, db_session):
    from fastapi.testclient import TestClient

    from wastewatch.app.db import get_db
    from wastewatch.app.main import app

    def _get_test_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def now():
    return datetime(2026, 4, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def account(db_session):
    from wastewatch.app.models import Account

    acct = Account(name="Everyday Checking", institution="Test Bank")
    db_session.add(acct)
    db_session.flush()
    return acct


@pytest.fixture()
def add_txn(db_session, account):
    from wastewatch.app.models import Transaction

    counter = {"n": 0}

    def _add(day: date, amount: float, merchant: str, *, category=None, merchant_normalized=None, account_id=None):
        counter["n"] += 1
        txn = Transaction(
            id=f"txn-{counter['n']:04d}",
            account_id=account_id or account.id,
            date=day,
            amount=amount,
            merchant=merchant,
            merchant_normalized=merchant_normalized,
            category=category,
        )
        db_session.add(txn)
        db_session.flush()
        return txn

    return _add
