from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantshift.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools; SQLite (tests) only needs a generous busy timeout.
if settings.database_url.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"timeout": 30}
else:
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
