"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from order_bot.core.config import settings


def _engine_kwargs(pooled: bool = False) -> dict:
    kwargs: dict = {"echo": settings.DEBUG, "pool_pre_ping": True}
    # SQLite (טסטים/פיתוח) לא תומך ב-pool_size
    if pooled and not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs())

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """יצירת טבלאות בהפעלה"""
    # ייבוא המודלים כדי שירשמו ב-Base.metadata
    from order_bot.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_task_session():
    """
    Create a fresh database session for Celery tasks.

    Each task runs in its own event loop, so the engine is created here and
    disposed on exit instead of reusing the module-level one.
    """
    task_engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(pooled=True))
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with task_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()

    await task_engine.dispose()
