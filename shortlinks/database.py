"""Database configuration and session management for the short-link service.

This module provides SQLAlchemy async engine setup, session management,
and database lifecycle operations using PostgreSQL as the backend.

Flow Diagram — Database Operations
=================================
::
    ┌─────────────┐
    │  Component  │
    │  operation  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ session_    │
    │ factory()   │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ session.    │
    │ begin()     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Commit or    │
    │ rollback     │
    └─────────────┘

How to Use
===========
**Step 1 — Initialize on startup**::
    await init_db()  # Creates tables

**Step 2 — Hand the factory to a component**::
    store = ShortLinkStore(session_factory=async_session, ...)

**Step 3 — Cleanup on shutdown**::
    await close_db()

Key Behaviours
===============
- Every component operation opens its own short-lived session; sessions are
  never shared between concurrent tasks.
- Connection pooling is configured for production workloads.
- Tables are created automatically on application startup.
- Engine is properly disposed on application shutdown.

Classes:
    Base:  SQLAlchemy declarative base for all models.

Functions:
    init_db():  Creates all tables on startup.
    close_db():  Disposes the engine on shutdown.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from shortlinks.config import get_settings

__all__ = ["Base", "async_session", "engine", "init_db", "close_db"]

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
