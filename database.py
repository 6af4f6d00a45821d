"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the escrow release service.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with settings appropriate for the backing database"""
    if database_url.startswith("sqlite"):
        new_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(new_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return new_engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# expire_on_commit=False keeps loaded rows readable after the session closes,
# sessions are never held across an await
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def bind_engine(new_engine: Engine) -> None:
    """Rebind the session factory (used by tests and alternate deployments)"""
    global engine
    engine = new_engine
    SessionLocal.configure(bind=new_engine)
    logger.info(f"🔌 DATABASE_REBOUND: {new_engine.url.render_as_string(hide_password=True)}")


def create_tables() -> None:
    """Create all tables declared on the models metadata"""
    try:
        Base.metadata.create_all(bind=SessionLocal.kw["bind"])
        logger.info("✅ Database tables created successfully")
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}")
        raise


def get_session() -> Session:
    """Get a new database session (caller closes it)"""
    return SessionLocal()


@contextmanager
def managed_session() -> Generator[Session, None, None]:
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Check database connectivity for health endpoints"""
    try:
        with managed_session() as session:
            session.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"❌ DATABASE_UNREACHABLE: {e}")
        return False
