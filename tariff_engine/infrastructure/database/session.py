"""Database session management with connection pooling"""

from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from tariff_engine.config import settings

SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def configure_engine(database_url: Optional[str] = None) -> Engine:
    """Create the engine and bind the session factory to it"""
    global _engine
    url = database_url or settings.database_url
    options = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        # Recycle pooled connections after 1 hour to avoid stale connections
        options.update(pool_size=5, max_overflow=5, pool_recycle=3600)
    _engine = create_engine(url, **options)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_db() -> Generator[Session, None, None]:
    """Yield a session and always close it"""
    if _engine is None:
        configure_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
