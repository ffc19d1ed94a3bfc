"""Engine, session factory and declarative base shared by every service."""
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    pass


def _connect_args(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout}
    return {}


engine = create_engine(settings.database_url, connect_args=_connect_args(settings.database_url))

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
