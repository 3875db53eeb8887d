import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import Settings, settings
from app.core.persistence import PersistenceProvider

logger = logging.getLogger(__name__)


def async_database_url(database_url: str) -> str:
    """Use asyncpg for postgresql:// URLs; asyncpg does not accept psycopg params like sslmode/channel_binding.

    Other URLs (e.g. sqlite+aiosqlite) are returned unchanged.
    """
    url = make_url(database_url)
    if url.drivername.split("+")[0] not in ("postgresql", "postgres"):
        return database_url
    query = {k: v for k, v in url.query.items() if k not in ("sslmode", "channel_binding")}
    return url.set(drivername="postgresql+asyncpg", query=query).render_as_string(hide_password=False)


def create_engine_from_settings(cfg: Settings = settings) -> AsyncEngine:
    url = async_database_url(cfg.database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=cfg.env == "development",
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args={"ssl": True} if cfg.database_ssl else {},
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_store(cfg: Settings = settings) -> PersistenceProvider:
    """Build the persistence adapter chosen by ``persistence_backend``."""
    if cfg.persistence_backend == "local":
        from app.core.local_store import LocalStore

        logger.warning("Using in-process local store: data is lost on restart")
        return LocalStore()

    from app.core.sql_store import SqlStore

    if not cfg.database_url:
        raise RuntimeError("DATABASE_URL must be set when PERSISTENCE_BACKEND=sql")
    store = SqlStore(create_engine_from_settings(cfg))
    if cfg.create_tables:
        await store.init_db()
    return store
