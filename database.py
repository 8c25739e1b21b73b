from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator, Optional

from config.settings import settings, IS_PRODUCTION

# Validate production database configuration
if IS_PRODUCTION:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL must be set in production. SQLite is not allowed in production.")
    if "sqlite" in settings.database_url.lower():
        raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")

# Default to SQLite with aiosqlite, but allow override via DATABASE_URL env var
DATABASE_URL = settings.database_url or "sqlite+aiosqlite:///./sql_app.db"


def _async_url(url: str) -> str:
    """Map a plain postgres URL onto the asyncpg driver."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


# Create async engine
engine = create_async_engine(
    _async_url(DATABASE_URL),
    echo=False,
    future=True,
)

# Create declarative base for models
Base = declarative_base()

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Privileged engine, created on first use from SERVICE_DATABASE_URL
_service_sessionmaker: Optional[async_sessionmaker] = None


async def init_db():
    """
    Initialize the database by creating all tables.
    This should be called on application startup.
    """
    async with engine.begin() as conn:
        # Import models here to ensure they're registered with Base
        from database_models import Account, DailyUsage  # noqa: F401
        # Create all tables
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields a user-scoped database session.
    Use this in FastAPI route dependencies to get a database session.

    Example:
        @app.get("/accounts")
        async def get_accounts(db: AsyncSession = Depends(get_db)):
            # Use db here
            pass
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_service_sessionmaker() -> Optional[async_sessionmaker]:
    """
    Dependency returning the session factory bound to the privileged
    SERVICE_DATABASE_URL, or None when that credential is not configured.

    Only the entitlement updater writes through this factory.
    """
    global _service_sessionmaker

    if not settings.service_database_url:
        return None

    if _service_sessionmaker is None:
        service_engine = create_async_engine(
            _async_url(settings.service_database_url),
            echo=False,
            future=True,
        )
        _service_sessionmaker = async_sessionmaker(
            service_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return _service_sessionmaker
