# app/core/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from app.core.config import settings


def build_engine(url: str):
    """Create a sync engine; sqlite URLs get a thread-safe single connection pool."""
    url = url.replace("+asyncpg", "")
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False, pool_pre_ping=True)


# Sync engine
engine = build_engine(settings.DATABASE_URL)

# Sync sessionmaker
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# Init DB (e.g. w startup)
def init_db(bind=None):
    # Register table models on the metadata before creating them
    import app.notifications.models  # noqa: F401

    SQLModel.metadata.create_all(bind=bind or engine)
