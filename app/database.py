"""
Database Connection Module
Handles the database connection using the SQLAlchemy async engine.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
import logging

from app.core.config import get_settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite (used by the test suite) manages its own pool, so pool sizing
    only applies to server databases.
    """
    options = {"echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=5,  # Connection pool size
            max_overflow=10,  # Extra connections when pool is full
            pool_pre_ping=True,
        )
    return create_async_engine(database_url, **options)


settings = get_settings()

# Create async engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = engine):
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Models must be registered on Base.metadata before create_all
    import app.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
