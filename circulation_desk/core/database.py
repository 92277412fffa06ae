from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from circulation_desk.core.config import settings
from circulation_desk.core.logging import get_logger

logger = get_logger("db")


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        logger.debug("rolling back transaction")
        db.rollback()
        raise


def init_db(bind=None) -> None:
    # models must be imported so their tables are registered on Base.metadata
    from circulation_desk.models import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
