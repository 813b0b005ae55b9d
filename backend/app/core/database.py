from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import settings

engine = create_engine(
    settings.APP_DATABASE_DSN,
    connect_args=({"check_same_thread": False} if "sqlite" in settings.APP_DATABASE_DSN else {}),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def new_session() -> Session:
    """Open a session outside of a request, e.g. from a worker task."""
    session: Session = SessionLocal()
    return session


def init_db() -> None:
    """Initialize database tables."""
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
