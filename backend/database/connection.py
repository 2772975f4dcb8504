from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


def build_engine(database_url: str, echo: bool = False, ssl: bool = False) -> AsyncEngine:
    """Create an async engine with dialect-appropriate pool settings."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        return create_async_engine(database_url, echo=echo, **kwargs)

    connect_args = {"ssl": "require"} if ssl else {}
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args=connect_args,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


_settings = get_settings()
DATABASE_URL = _settings.get_database_url()

engine = build_engine(DATABASE_URL, echo=_settings.DATABASE_ECHO, ssl=_settings.DATABASE_SSL)

# Create async session factory
AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = None):
    """Verify the connection and create any missing tables"""
    bind = bind or engine
    try:
        async with bind.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info(f"Database connection successful ({bind.dialect.name})")

            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Available tables: {sorted(Base.metadata.tables)}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
