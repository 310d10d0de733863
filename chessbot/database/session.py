import pathlib
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from chessbot.config import settings


class Base(DeclarativeBase):
    pass

_engine: AsyncEngine | None = None
_async_session: async_sessionmaker[AsyncSession] | None = None


def _ensure_data_dir(database_url: str):
    if database_url.startswith("sqlite") and ":memory:" not in database_url:
        path = pathlib.Path(database_url.split("///", 1)[-1]).parent
        path.mkdir(parents=True, exist_ok=True)


def create_engine_and_sessionmaker(
    database_url: str,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Build an engine plus session factory; in-memory SQLite shares one connection."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        engine = create_async_engine(database_url, echo=False, poolclass=StaticPool)
    else:
        engine = create_async_engine(database_url, echo=False)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine):
    # import models so they register on Base.metadata
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    global _engine, _async_session
    url = database_url or settings.database_url
    _ensure_data_dir(url)
    _engine, _async_session = create_engine_and_sessionmaker(url)
    await create_tables(_engine)
    return _async_session


async def close_db():
    global _engine, _async_session
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session = None


def get_session() -> async_sessionmaker[AsyncSession]:
    assert _async_session is not None, "DB is not initialized"
    return _async_session
