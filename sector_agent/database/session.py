from typing import Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sector_agent.data_models.models import Base
from sector_agent.config.settings import settings
import logging

logger = logging.getLogger(__name__)

# --- DEFERRED INITIALIZATION ---
engine: Optional[AsyncEngine] = None
SessionLocal: Optional[sessionmaker] = None


def create_db_engine_and_session(database_url: Optional[str] = None) -> sessionmaker:
    """
    Creates the database engine and session factory. This must be called
    during application startup after environment variables are loaded.
    """
    global engine, SessionLocal

    url = database_url or settings.database_url
    if not url:
        raise RuntimeError("FATAL: Database URL is not available in settings at runtime.")

    logger.info(f"Creating database engine for URL (host: ...@{url.split('@')[-1]})")

    engine = create_async_engine(url, echo=False, future=True)
    SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Database engine and session factory created successfully.")
    return SessionLocal


async def init_db():
    """
    Initializes the database by creating all tables defined in the models.
    """
    if engine is None:
        raise RuntimeError("Database engine has not been initialized. Call create_db_engine_and_session() first.")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables verified/created successfully.")
    except Exception as e:
        logger.error(f"Error during table creation in init_db: {e}", exc_info=True)
        raise


async def dispose_db():
    """Closes every pooled connection; safe to call when no engine exists."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None

