from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

from config import DATABASE_URL
from db.models import Base

_IS_SQLITE = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if _IS_SQLITE else {},
)

if _IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
        # leg_fields/tags/posts rely on ON DELETE CASCADE during housekeeping
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create the leg store tables if they don't exist."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for scheduled jobs, which run outside FastAPI's DI system."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_session() -> Iterator[Session]:
    """Dependency-injectable session factory for FastAPI routes."""
    with session_scope() as session:
        yield session
