import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI
from sqlalchemy import text

from app.core.database import dispose_engine, get_db_engine
from app.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging after uvicorn starts and release the database pool on shutdown."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
    await _log_db_state(logger=logger, dsn=settings.pg_dsn)
  except Exception:
    # Log initialization failures but allow the app to continue starting.
    logger.warning("Startup checks failed; continuing.", exc_info=True)

  yield

  await dispose_engine()


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"


async def _log_db_state(*, logger: logging.Logger, dsn: str | None) -> None:
  """Log whether the segment tables exist in the connected database."""
  engine = get_db_engine()
  if engine is None:
    logger.warning("Database engine unavailable (VIDQUIZ_PG_DSN=%s).", _redact_dsn(dsn))
    return

  async with engine.connect() as connection:
    result = await connection.execute(text("SELECT to_regclass('public.course_segments') IS NOT NULL"))
    logger.info("Connected to %s; course_segments table present=%s", _redact_dsn(dsn), bool(result.scalar_one()))
