from collections.abc import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from agenda.config import settings

logger = structlog.get_logger()


def _engine_options(url: str) -> dict:
    """Pool and SSL options for the configured backend; SQLite takes neither."""
    if url.startswith("sqlite"):
        # Workers and the API share one SQLite file in development.
        return {"connect_args": {"timeout": 30}}
    options: dict = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": 3600,
        "pool_timeout": 30,
    }
    if settings.is_production:
        options["connect_args"] = {"ssl": "require"}
    return options


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.APP_DEBUG,
    pool_pre_ping=True,
    **_engine_options(settings.DATABASE_URL),
)

# Job store, handlers and routes all open sessions from this factory.
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("db_session_rollback")
            raise
