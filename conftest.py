import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from catalog import BookCatalog
from config import LendingPolicy
from database import Base, get_db
from lifecycle import LifecycleOrchestrator
from models import Role, User

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def policy():
    return LendingPolicy(late_fee_per_day=Decimal("2.00"))


@pytest.fixture
def orchestrator(db, policy):
    return LifecycleOrchestrator(db, policy)


def make_user(db, username, role=Role.STUDENT, password_hash="not-a-real-hash"):
    user = User(username=username, password_hash=password_hash, role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db):
    return make_user(db, "librarian", Role.ADMIN)


@pytest.fixture
def student(db):
    return make_user(db, "student1")


@pytest.fixture
def other_student(db):
    return make_user(db, "student2")


@pytest.fixture
def book(db):
    return BookCatalog(db).add_book("Dune", "Frank Herbert", isbn="9780441172719", total_copies=1)


@pytest.fixture
def client(session_factory):
    from main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
