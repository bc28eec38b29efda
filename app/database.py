from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the configured URL.

    SQLite needs ``check_same_thread=False`` because the request threadpool and
    the scheduler thread share the engine. In-memory SQLite additionally needs a
    single shared connection, otherwise every session sees an empty database.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    # Verify pooled connections before use
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory for short-lived, per-operation sessions."""
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False
    )


def init_db(engine: Engine) -> None:
    """Create database tables if they do not exist."""
    # Register every model on Base.metadata
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
