from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from .config import settings
from typing import Optional

# Create async engine (only if database_url is provided)
engine: Optional[AsyncEngine] = None
if settings.database_url:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
        pool_recycle=300,
    )

# Create async session factory (only if engine exists)
AsyncSessionLocal: Optional[async_sessionmaker] = None
if engine:
    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_session_factory() -> async_sessionmaker:
    """Session factory used by the ledger, audit logger and state machine.

    Each of them opens its own short-lived session so that ledger and audit
    writes commit independently of the primary billing transaction.
    """
    if not AsyncSessionLocal:
        raise RuntimeError(
            "Database not configured. Please set DATABASE_URL in your .env file."
        )
    return AsyncSessionLocal


async def init_db(bind: Optional[AsyncEngine] = None):
    """Initialize database tables on bind, or on the configured engine"""
    bind = bind or engine
    if not bind:
        raise RuntimeError("Database engine not initialized. Set DATABASE_URL in .env")
    async with bind.begin() as conn:
        # Import all models to ensure they are registered
        from billing_processor.models import Base
        await conn.run_sync(Base.metadata.create_all)
