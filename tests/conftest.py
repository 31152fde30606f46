"""
Pytest fixtures for testing
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from studyfin.infrastructure.db.session import Base
from studyfin.infrastructure.db.models import Student, ExpenseCategory


@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared across threads (TestClient runs sync routes in a worker thread)"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Session:
    """Create database session for tests"""
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def students(db_session):
    """Two students with seats"""
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    items = [
        Student(id=1, name="Asha", seat_number="A1", created_at=created),
        Student(id=2, name="Ravi", seat_number="B4", created_at=created),
    ]
    db_session.add_all(items)
    db_session.flush()
    return items


@pytest.fixture
def categories(db_session):
    """Rent + Electricity expense categories"""
    items = [
        ExpenseCategory(id=1, name="Rent"),
        ExpenseCategory(id=2, name="Electricity"),
    ]
    db_session.add_all(items)
    db_session.flush()
    return items
