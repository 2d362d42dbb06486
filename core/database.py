"""
Database session management with SQLAlchemy async
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None, **kwargs) -> AsyncEngine:
    """
    Create the async engine shared by every pipeline run.

    Postgres gets a bounded pool so concurrently running entity types
    share at most DB_POOL_SIZE + DB_MAX_OVERFLOW connections. SQLite gets
    foreign key enforcement switched on for every connection.
    """
    url = database_url or settings.DATABASE_URL
    
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=False, future=True, **kwargs)
        enable_sqlite_foreign_keys(engine)
        return engine
    
    return create_async_engine(
        url,
        echo=False,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        future=True,
        **kwargs
    )


def enable_sqlite_foreign_keys(engine: AsyncEngine):
    """SQLite ignores FOREIGN KEY constraints unless asked per connection"""
    
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


engine = build_engine()

# Create session factory
async_session_maker = build_session_maker(engine)
