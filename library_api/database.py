from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from library_api.config import settings


DATABASE_URL = settings.database_url


def enable_sqlite_foreign_keys(target_engine):
    """
    Turn on foreign key enforcement for every new SQLite connection.

    SQLite ships with it off, which would let a loan outlive its book or
    student when a delete races a new loan.
    """

    @event.listens_for(target_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
)
if DATABASE_URL.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    This generator function:
    1. Creates a new SQLAlchemy session
    2. Yields it to the caller (FastAPI endpoint)
    3. Ensures the session is closed after use (in finally block)

    One session per request keeps the loan ledger's checks and writes
    inside a single unit of work.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
