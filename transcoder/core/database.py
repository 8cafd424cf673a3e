"""SQLAlchemy engine and declarative base for the durable job store."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    """Declarative base for ORM models."""


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine usable from the scheduler and worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=echo, future=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory and make sure all tables exist."""
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
