"""Database configuration and session management for the durable link store.

This module provides SQLAlchemy async engine setup, session management,
and database lifecycle operations using PostgreSQL as the backend. The HTTP
application uses one session per request; the ingestion worker opens a
short-lived session per flushed batch.

Flow Diagram — Database Operations
=================================
::
    ┌─────────────┐        ┌─────────────┐
    │  HTTP       │        │  Ingestion   │
    │  request    │        │  flush       │
    └──────┬──────┘        └──────┬──────┘
           ▼                      ▼
    ┌─────────────┐        ┌─────────────┐
    │ get_db()     │        │ async_session│
    │ dependency  │        │ () context   │
    └──────┬──────┘        └──────┬──────┘
           └──────────┬───────────┘
                      ▼
               ┌─────────────┐
               │ Pooled      │
               │ asyncpg conn│
               └─────────────┘

How to Use
===========
**Step 1 — Initialize on startup**::
    await init_db()  # Creates tables

**Step 2 — Use in FastAPI endpoints**::
    @app.get("/links")
    async def list_links(db: AsyncSession = Depends(get_db)):
        ...

**Step 3 — Cleanup on shutdown**::
    await close_db()

Key Behaviours
===============
- Async sessions are automatically closed after each request.
- Every statement is bounded by asyncpg's command_timeout so a stalled
  store fails the request instead of hanging it.
- Tables are created automatically on application startup.

Classes:
    Base:  SQLAlchemy declarative base for all models.

Functions:
    get_db():  FastAPI dependency for database sessions.
    init_db():  Creates all tables on startup.
    close_db():  Disposes the engine on shutdown.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from linkapp.config import get_settings

__all__ = ["Base", "async_session", "engine", "get_db", "init_db", "close_db"]

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_pre_ping=True,
    connect_args={"command_timeout": settings.DATABASE_COMMAND_TIMEOUT_SECONDS},
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
