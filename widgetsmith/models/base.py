# widgetsmith/models/base.py
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base(cls=AsyncAttrs)


def create_engine_and_sessionmaker(database_url: str, echo: bool = False):
    """
    Builds the async engine and its session factory.
    SQLite URLs skip pool_pre_ping, which aiosqlite does not need.
    """
    engine_kwargs = {"echo": echo, "future": True}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_pre_ping"] = True
    engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_factory


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a session from the factory built during startup.
    """
    session_factory: Optional[async_sessionmaker] = getattr(request.app.state, "session_factory", None)
    if session_factory is None:
        raise RuntimeError("Database is not initialized. Was the application lifespan started?")
    async with session_factory() as session:
        yield session
