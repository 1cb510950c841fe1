from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from billing.config import get_settings

Base = declarative_base()


def make_engine(database_url: str, timeout_seconds: float):
    """Build an engine whose every statement is bounded by ``timeout_seconds``.

    SQLite waits at most that long on a locked database; PostgreSQL gets both a
    connect timeout and a server-side statement timeout.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout_seconds}
    elif database_url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    else:
        connect_args = {}

    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


settings = get_settings()
engine = make_engine(settings.database_url, settings.db_timeout_seconds)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
