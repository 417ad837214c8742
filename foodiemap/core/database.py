import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings
from .errors import TransientStoreError

logger = logging.getLogger(__name__)

Base = declarative_base()


def _connect_args(url: str) -> dict:
    """Per-driver options that keep every round trip bounded."""
    if url.startswith("sqlite"):
        return {
            "check_same_thread": False,
            "timeout": settings.DB_STATEMENT_TIMEOUT_MS / 1000,
        }
    return {
        "connect_timeout": settings.DB_POOL_TIMEOUT_SECONDS,
        "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
    }


def get_engine(url: str = None):
    # Use 127.0.0.1 instead of localhost to avoid Windows/Docker resolution issues
    db_url = (url or settings.DATABASE_URL).replace("localhost", "127.0.0.1")
    kwargs = {"pool_pre_ping": True, "connect_args": _connect_args(db_url)}
    if not db_url.startswith("sqlite"):
        kwargs["pool_timeout"] = settings.DB_POOL_TIMEOUT_SECONDS
    return create_engine(db_url, **kwargs)


engine = get_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that yields a database session.
    Usage with FastAPI: db: Session = Depends(get_db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Creates all tables defined in the metadata.
    This replaces Alembic for simple setups.
    """
    # Import models here to ensure they are registered with Base
    from foodiemap.models import Admin, Favorite, Review, User, VerificationCode  # noqa

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def store_call(db: Session, operation: str):
    """
    Wraps a store round trip. Connection failures and timeouts roll the
    session back and surface as a retryable TransientStoreError.
    """
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as e:
        logger.error(f"Store failure during {operation}: {e}")
        db.rollback()
        raise TransientStoreError(operation) from e
