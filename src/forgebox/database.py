"""Database setup and session management"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_database_url


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # API threads, the sweep thread and reader threads share the engine
        return {"connect_args": {"check_same_thread": False}}
    # Detect dropped connections and recycle before server-side timeouts
    return {"pool_pre_ping": True, "pool_recycle": 1800}


_database_url = get_database_url()
engine = create_engine(_database_url, **_engine_kwargs(_database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None):
    """Initialize database tables"""
    # Import models to register them with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
