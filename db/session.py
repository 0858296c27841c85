"""
db/session.py — Database Connection & Session Management
=========================================================
Handles the async database connection using SQLAlchemy.
SQLite (aiosqlite) in development, PostgreSQL (asyncpg) in production.
Called by main.py on startup via init_db().

Services receive a session factory and open short transactions themselves;
nothing holds a session across a ledger call.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from config import settings
import logging

logger = logging.getLogger("personachain.db")


def normalize_url(url: str) -> str:
    """Convert standard postgres:// URLs to async postgresql+asyncpg://"""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_url(url)
    options = {"echo": echo}
    if not url.startswith("sqlite"):
        options.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return create_async_engine(url, **options)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = create_session_factory(engine)


class Base(DeclarativeBase):
    """Base class all database models inherit from."""
    pass


async def init_db(bind: AsyncEngine = None):
    """Create all tables on startup if they don't exist."""
    from db.models import (  # noqa: import triggers table registration
        IdentityRecord, CredentialRecord, AnchorRecord,
        ProofRecord, NullifierRecord, AuditLog
    )
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified.")
