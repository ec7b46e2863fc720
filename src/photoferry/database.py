"""Database configuration and session management."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from photoferry.settings import settings


def get_engine_kwargs(database_url: str | None = None) -> dict:
    """Return SQLAlchemy engine kwargs with safe defaults for long-running workers."""
    url = database_url or settings.database_url
    kwargs = {
        "pool_pre_ping": settings.db_pool_pre_ping,
        "pool_recycle": settings.db_pool_recycle,
    }

    if url.startswith("sqlite"):
        # Upload workers share the engine across threads.
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": settings.db_sqlite_timeout,
        }
    else:
        kwargs["pool_size"] = settings.db_pool_size
        kwargs["max_overflow"] = settings.db_max_overflow
        kwargs["pool_timeout"] = settings.db_pool_timeout

    return kwargs


def build_engine(database_url: str | None = None):
    """Build a database engine using configured pool and connectivity options."""
    url = database_url or settings.database_url
    return create_engine(url, **get_engine_kwargs(url))


def build_session_factory(engine) -> sessionmaker:
    """Session factory whose rows stay readable after commit (detached use across threads)."""
    return sessionmaker(bind=engine, expire_on_commit=False)


# Create database engine
engine = build_engine()

# Create session factory
SessionLocal = build_session_factory(engine)


def init_db(bind=None) -> None:
    """Create all queue tables if they do not exist."""
    from photoferry.metadata import Base

    Base.metadata.create_all(bind or engine)
