"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Global engine instance
_engine: Optional[Engine] = None

# Session factory, bound whenever the engine is (re)created
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

# Base class for all database models
Base = declarative_base()


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None,
                        pool_size: int = 5,
                        max_overflow: int = 10) -> Engine:
    """Get or create database engine with configuration."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("IMAGEFLOW_DATABASE_URL", "sqlite:///./imageflow.db")

        if connect_args is None:
            if database_url.startswith("sqlite"):
                connect_args = {"check_same_thread": False}
            else:
                connect_args = {}

        # In-memory SQLite needs a single shared connection
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            _engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        elif database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                echo=echo,
                connect_args=connect_args
            )
        else:
            _engine = create_engine(
                database_url,
                echo=echo,
                connect_args=connect_args,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True
            )

        SessionLocal.configure(bind=_engine)

    return _engine


def init_database(database_url: str, echo: bool = False, connect_args: Optional[dict] = None,
                  pool_size: int = 5, max_overflow: int = 10) -> Engine:
    """Point the storage layer at a database and create missing tables."""
    reset_database_engine()
    engine = get_database_engine(database_url, echo=echo, connect_args=connect_args,
                                 pool_size=pool_size, max_overflow=max_overflow)
    create_tables()
    return engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def get_db():
    """Dependency to get database session."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    Base.metadata.drop_all(bind=get_database_engine())
