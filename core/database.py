"""
Database session management with SQLAlchemy async
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite honour SAVEPOINT and take the write lock at BEGIN.

    pysqlite's own transaction handling breaks nested transactions and lets
    two writers deadlock on lock upgrade, so BEGIN is emitted by hand.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _create_engine(database_url: str) -> AsyncEngine:
    new_engine = create_async_engine(
        database_url,
        echo=False,
        poolclass=NullPool,  # Every run task opens short-lived sessions of its own
        future=True
    )
    if new_engine.dialect.name == "sqlite":
        configure_sqlite(new_engine)
    return new_engine


# Create async engine
engine = _create_engine(settings.DATABASE_URL)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


def build_session_factory(database_url: str) -> async_sessionmaker:
    """Create a session factory bound to a fresh engine (scripts, tests)."""
    return async_sessionmaker(
        _create_engine(database_url),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session
