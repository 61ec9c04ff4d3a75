import logging
import os
from typing import Callable, TypeVar

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, DisconnectionError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./smartpark.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
    pool_pre_ping=not DATABASE_URL.startswith("sqlite"),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

T = TypeVar("T")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_disconnect_error(exc: BaseException) -> bool:
    if isinstance(exc, DisconnectionError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def reset_connection_pool(db: Session) -> None:
    """
    Drop every pooled connection behind the session's bind so the next
    checkout opens a fresh one.
    """
    try:
        db.rollback()
    except Exception:
        logger.warning("Rollback failed while resetting connection pool", exc_info=True)
    bind = db.get_bind()
    bind_engine = getattr(bind, "engine", bind)
    bind_engine.dispose()


def run_with_reconnect(db: Session, work: Callable[[], T]) -> T:
    """
    Run a unit of work; when it fails because the database connection was
    dropped, reset the pool and run it exactly once more.
    """
    try:
        return work()
    except Exception as exc:
        if not is_disconnect_error(exc):
            raise
        logger.warning("Database connection dropped, resetting pool and retrying once: %s", exc)
        reset_connection_pool(db)
    return work()


def with_row_lock(db: Session, query):
    """
    Lock the selected rows for the rest of the transaction and overwrite any
    copies already loaded in the session with the committed values.
    """
    if db.get_bind().dialect.name != "sqlite":
        query = query.with_for_update()
    return query.populate_existing()
