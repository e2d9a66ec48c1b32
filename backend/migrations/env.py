import asyncio
from logging import getLogger

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

# Import all modules with SQLModel(table=True) so metadata is populated
import app.notifications.models  # noqa: F401

from app.core.config import settings

# Collect metadata for all tables
target_metadata = SQLModel.metadata

logger = getLogger("alembic.env")
logger.setLevel("INFO")
logger.info("metadata.tables = %r", list(target_metadata.tables.keys()))

# Define sync and async database URLs
sync_url = settings.DATABASE_URL.replace("+asyncpg", "")
async_url = settings.DATABASE_URL

# Create the async SQLAlchemy engine
engine = create_async_engine(async_url, echo=False)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generate SQL without DB connectivity)."""
    context.configure(
        url=sync_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB asynchronously)."""
    def do_migrations(sync_conn):
        context.configure(
            connection=sync_conn,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=True,
        )
        context.run_migrations()

    async with engine.begin() as conn:
        await conn.run_sync(do_migrations)


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
