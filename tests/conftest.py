import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from library_api.endpoints import app
from library_api.database import Base, enable_sqlite_foreign_keys, get_db


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    FastAPI's dependency injection will call this instead during tests, for
    the routers and for the loan ledger dependency alike.
    """
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test and drop them afterwards.

    Every test starts with an empty database.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeClock:
    """Clock returning a fixed instant that tests move forward explicitly."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, 0))


def make_book(client, quantity=1, isbn="9780451524935", title="Nineteen Eighty-Four"):
    """Create an author, a genre and a book through the API; return the book."""
    author = client.post("/authors", json={"name": "George Orwell"}).json()
    genre = client.post("/genres", json={"name": "Dystopia"}).json()
    response = client.post(
        "/books",
        json={
            "title": title,
            "isbn": isbn,
            "publication_year": 1949,
            "quantity": quantity,
            "author_id": author["id"],
            "genre_id": genre["id"],
        },
    )
    assert response.status_code == 201
    return response.json()


def make_student(client, name="Ana Souza", registration_number="2024001"):
    response = client.post(
        "/students",
        json={
            "name": name,
            "email": f"{registration_number}@school.edu",
            "registration_number": registration_number,
            "phone": "555-0100",
        },
    )
    assert response.status_code == 201
    return response.json()
