import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from sqlmodel import SQLModel
from app.core.config import settings
from app.core.db import async_database_url, create_engine_from_settings
from app.models.user import User  # noqa: F401 - register table
from app.models.refresh_token import RefreshToken  # noqa: F401
from app.models.slot import Slot  # noqa: F401
from app.models.appointment import Appointment, AppointmentStatusChange  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

if not settings.database_url:
    raise RuntimeError("DATABASE_URL must be set to run migrations")
# configparser interpolation: escape % from url-encoded passwords
config.set_main_option("sqlalchemy.url", async_database_url(settings.database_url).replace("%", "%%"))
target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Same engine settings as the app (asyncpg, ssl flag)."""
    engine = create_engine_from_settings(settings)
    async with engine.connect() as connection:
        await connection.run_sync(_run_with_connection)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
