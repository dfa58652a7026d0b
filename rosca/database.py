from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base


# Global engine and session factory
engine = None
session_factory = None


def _enable_sqlite_transactions(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so a unit of work reads and writes in one transaction"""

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def engine_options(url: str, busy_timeout: float = 15.0) -> dict:
    """
    Connection settings for a database URL

    SQLite serialises writers through its file lock. Other databases run at
    SERIALIZABLE so two allocations reading the same month conflict instead of
    both committing; the conflict surfaces as an OperationalError and is retried.
    """
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": busy_timeout}}
    return {"isolation_level": "SERIALIZABLE"}


def create_session_factory(url: str, busy_timeout: float = 15.0) -> sessionmaker:
    """Create an engine for ``url``, make sure all tables exist and return a session factory"""
    engine = create_engine(url, **engine_options(url, busy_timeout))
    if url.startswith("sqlite"):
        _enable_sqlite_transactions(engine)

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_database(url: str) -> sessionmaker:
    """Initialize the process-wide database connection and create tables"""
    global engine, session_factory

    session_factory = create_session_factory(url)
    engine = session_factory.kw["bind"]
    return session_factory


def get_session() -> Session:
    """Open a new session on the process-wide database"""
    if session_factory is None:
        raise RuntimeError("Circle database is not initialized")
    return session_factory()
