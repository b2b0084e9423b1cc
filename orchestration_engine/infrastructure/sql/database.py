#orchestration_engine\infrastructure\sql\database.py

"""SQLAlchemy database setup and session management."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


# ============================================
# Base for ORM models
# ============================================
Base = declarative_base()


# ============================================
# Engine configuration
# ============================================
def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create SQLAlchemy engine for the state store."""

    kwargs = {"echo": echo, "pool_pre_ping": True}

    if database_url.startswith("sqlite"):
        # Supervisor and certificate threads share the engine
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool

    return create_engine(database_url, **kwargs)


# ============================================
# Session factory function
# ============================================
def get_session_factory(engine_instance: Engine) -> sessionmaker:
    """Get a session factory bound to the given engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine_instance,
        expire_on_commit=False
    )


# ============================================
# Database initialization
# ============================================
def init_db(engine_instance: Engine) -> None:
    """Create all tables."""
    # Import models so they register on Base.metadata
    from orchestration_engine.infrastructure.sql import models  # noqa: F401
    Base.metadata.create_all(bind=engine_instance)

