"""Database configuration for the PostgreSQL session store.

This module uses SQLAlchemy's asyncio support with asyncpg to connect to
PostgreSQL.  The connection URL is assembled from environment
variables.  In production on Cloud Run with Cloud SQL, the connector
uses a Unix socket; in local development, it falls back to TCP.  It is
only imported when ``GLOTTI_STORE_BACKEND=database``.
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base


def _make_database_url() -> str:
    """Construct a database URL based on environment variables.

    The following environment variables are used:

    - DATABASE_URL: Used as-is when set.
    - CLOUDSQL_INSTANCE_CONNECTION_NAME: If set, indicates the Cloud SQL
      instance connection name (e.g. `project:region:instance`).  When
      present, the database will connect via a Unix domain socket.
    - DB_USER, DB_PASSWORD, DB_NAME: Credentials and database name.
    - DB_HOST, DB_PORT: Used when not connecting via socket.
    """
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    db_name = os.getenv("DB_NAME", "postgres")
    instance_connection_name = os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME")
    if instance_connection_name:
        return (
            f"postgresql+asyncpg://{user}:{password}@/{db_name}?host=/cloudsql/{instance_connection_name}"
        )
    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"


DATABASE_URL = _make_database_url()
engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db() -> None:
    """Create the sessions table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
