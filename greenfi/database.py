import os
import logging
from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from dotenv import load_dotenv

from .errors import PersistenceError

load_dotenv()
logger = logging.getLogger(__name__)

DB_URL = os.getenv("DATABASE_URL", "sqlite:///./greenfi.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))

Base = declarative_base()


def build_engine(url: str = DB_URL, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_size", DB_POOL_SIZE)
        kwargs.setdefault("pool_pre_ping", True)
    engine = create_engine(url, echo=False, future=True, **kwargs)

    if url.startswith("sqlite"):
        # SQLite ignores ON DELETE CASCADE unless asked per connection
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


engine = build_engine()
SessionLocal = build_session_factory(engine)


def get_db(request: Request):
    """Per-request session from the factory the app owns; always closed."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def commit(db) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Commit failed: {e}")
        raise PersistenceError(str(e)) from e


def init_database(engine) -> None:
    """Fail fast when the database is unreachable, then create missing tables."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {e}")
        logger.error("Check DATABASE_URL and that the database server is running")
        raise SystemExit(1)

    # models must be imported before create_all sees their tables
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")
