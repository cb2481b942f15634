from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


def get_engine(url: str | None = None):
    """Build the engine for ``url`` (defaults to DATABASE_URL).

    SQLite is accepted for local runs; pool sizing only applies to server
    databases.
    """
    url = url or settings.database_url
    if make_url(url).get_backend_name() == "sqlite":
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """Request-scoped session for the billing API.

    Services commit their own units of work; anything left uncommitted when the
    request ends is discarded on close.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
