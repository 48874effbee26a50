"""Database initialization helper for local/dev environments.

Creates the configured database when missing, then creates the segment pipeline tables.
CREATE DATABASE cannot be parameterized in PostgreSQL, so the name is validated first.
"""

import asyncio
import os
import re
import sys

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import create_async_engine

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


_DB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _validate_database_name(db_name: str) -> str:
  """Only allow identifier-safe names since the value is interpolated into SQL."""
  if not db_name:
    raise ValueError("Target database name is empty.")
  if not _DB_NAME_PATTERN.fullmatch(db_name):
    raise ValueError("Target database name contains invalid characters (allowed: A-Z, a-z, 0-9, _).")
  return db_name


def _async_url(dsn: str):
  url = make_url(dsn)
  if url.drivername.startswith("postgresql") and "+asyncpg" not in url.drivername:
    url = url.set(drivername="postgresql+asyncpg")
  return url


async def create_database_if_not_exists(dsn: str) -> None:
  """Create the configured database if it does not already exist."""
  url = _async_url(dsn)
  target_db = _validate_database_name(url.database or "")

  print(f"Connecting to postgres to check for database '{target_db}'...")
  # CREATE DATABASE needs AUTOCOMMIT.
  engine = create_async_engine(url.set(database="postgres"), isolation_level="AUTOCOMMIT")
  try:
    async with engine.connect() as conn:
      result = await conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": target_db})
      if result.scalar() == 1:
        print(f"Database '{target_db}' already exists.")
      else:
        print(f"Database '{target_db}' does not exist. Creating...")
        await conn.execute(text(f'CREATE DATABASE "{target_db}"'))
        print(f"Database '{target_db}' created successfully.")
  finally:
    await engine.dispose()


async def create_tables(dsn: str) -> None:
  """Create every table registered on the declarative base."""
  from app.core.database import Base
  from app.schema import pipeline  # noqa: F401

  engine = create_async_engine(_async_url(dsn))
  try:
    async with engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)
    print(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")
  finally:
    await engine.dispose()


async def main() -> None:
  from app.config import get_database_settings

  dsn = get_database_settings().pg_dsn
  if not dsn:
    print("Error: VIDQUIZ_PG_DSN is not set.")
    sys.exit(1)

  try:
    await create_database_if_not_exists(dsn)
    await create_tables(dsn)
  except Exception as e:
    print(f"Error initializing database: {e}")
    sys.exit(1)


if __name__ == "__main__":
  asyncio.run(main())
