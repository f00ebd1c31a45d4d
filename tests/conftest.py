"""Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database. Each test gets a session
bound to an outer transaction that is rolled back afterwards, so service
``begin_nested()`` savepoints and router ``commit()`` calls both stay
inside the test's sandbox.
"""

import os

# Must be set before machinegate.core.config is first imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["LOG_TO_FILE"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from machinegate.core.policy import RuleCache
from machinegate.core.security import create_access_token
from machinegate.db.base import Base
from machinegate.db import models  # noqa: F401


@pytest.fixture(scope="session")
def db_engine():
    """Shared in-memory engine with the full schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Session rolled back after each test."""
    connection = db_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, autoflush=False, join_transaction_mode="create_savepoint")
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def rule_cache():
    return RuleCache(ttl_seconds=60)


@pytest.fixture
def client(db_session, rule_cache):
    """API client sharing the test's session and a fresh rule cache."""
    from machinegate.api.deps import get_db
    from machinegate.api.main import app

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.state.rule_cache = rule_cache
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build bearer headers for a stored user."""

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers
