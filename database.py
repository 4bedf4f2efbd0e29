"""
SQLAlchemy engine, session factory and declarative base.

Convention:
    - Models import `Base` from here
    - Request handlers receive a session through the `get_db` dependency
    - Repository functions flush, handlers commit
"""
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _connect_args(url: str) -> dict:
    # SQLite connections are shared across the threadpool FastAPI runs sync endpoints in
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.sql_echo,
    connect_args=_connect_args(settings.DATABASE_URL),
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    """Create all tables that don't exist yet."""
    import models  # noqa: F401 - registers the mappers on Base.metadata

    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Dependency that yields a DB session and closes it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
