"""
=============================================================================
CABINEX - Motor de Base de Datos y Sesiones
=============================================================================
Cada request obtiene su propia AsyncSession (adquirida y liberada por
request); no hay pool ni conexión global mutable fuera de app.state.
=============================================================================
"""

import logging
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Crea el motor async. SQLite en memoria comparte una sola conexión
    (StaticPool) para que todas las sesiones vean las mismas tablas.
    """
    if _is_memory_sqlite(database_url):
        return create_async_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,    # Validar conexiones antes de usarlas
        pool_recycle=3600,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Crea las tablas que no existan (equivalente a CREATE TABLE IF NOT EXISTS)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DB] Esquema inicializado")


async def drop_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("[DB] Todas las tablas eliminadas")


async def get_db_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependencia FastAPI: una sesión por request."""
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        yield session
