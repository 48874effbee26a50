"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the vidquiz service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  pg_dsn: str | None
  pg_connect_timeout: int
  gemini_api_key: str | None
  analysis_model: str
  generation_model: str
  youtube_api_key: str | None
  lease_timeout_seconds: int
  segment_duration_seconds: int
  min_tail_segment_seconds: int
  max_questions_per_segment: int
  default_video_duration_seconds: int
  generation_concurrency: int
  storage_concurrency: int
  context_window_seconds: int
  context_question_count: int
  task_service_provider: str
  cloud_tasks_queue_path: str | None
  base_url: str | None
  task_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("VIDQUIZ_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("VIDQUIZ_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  """Read an integer env var and reject zero or negative values."""

  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("VIDQUIZ_ENV", "development").lower()
  debug = _parse_bool(os.getenv("VIDQUIZ_DEBUG"))

  log_max_bytes = _positive_int("VIDQUIZ_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("VIDQUIZ_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("VIDQUIZ_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Segment pipeline tuning.
  lease_timeout_seconds = _positive_int("VIDQUIZ_LEASE_TIMEOUT_SECONDS", "300")
  segment_duration_seconds = _positive_int("VIDQUIZ_SEGMENT_DURATION_SECONDS", "300")
  min_tail_segment_seconds = int(os.getenv("VIDQUIZ_MIN_TAIL_SEGMENT_SECONDS", "20"))
  if min_tail_segment_seconds < 0:
    raise ValueError("VIDQUIZ_MIN_TAIL_SEGMENT_SECONDS must be zero or a positive integer.")
  max_questions_per_segment = _positive_int("VIDQUIZ_MAX_QUESTIONS_PER_SEGMENT", "5")
  default_video_duration_seconds = _positive_int("VIDQUIZ_DEFAULT_VIDEO_DURATION_SECONDS", "1800")
  generation_concurrency = _positive_int("VIDQUIZ_GENERATION_CONCURRENCY", "8")
  storage_concurrency = _positive_int("VIDQUIZ_STORAGE_CONCURRENCY", "8")
  context_window_seconds = _positive_int("VIDQUIZ_CONTEXT_WINDOW_SECONDS", "120")
  context_question_count = _positive_int("VIDQUIZ_CONTEXT_QUESTION_COUNT", "3")

  task_service_provider = os.getenv("VIDQUIZ_TASK_SERVICE_PROVIDER", "inline").strip().lower()
  if task_service_provider not in {"inline", "local-http", "gcp"}:
    raise ValueError("VIDQUIZ_TASK_SERVICE_PROVIDER must be one of: inline, local-http, gcp.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("VIDQUIZ_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    pg_dsn=os.getenv("VIDQUIZ_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("VIDQUIZ_PG_CONNECT_TIMEOUT", "5"),
    gemini_api_key=_optional_str(os.getenv("GEMINI_API_KEY")),
    analysis_model=os.getenv("VIDQUIZ_ANALYSIS_MODEL", "gemini-2.5-flash"),
    generation_model=os.getenv("VIDQUIZ_GENERATION_MODEL", "gemini-2.5-flash"),
    youtube_api_key=_optional_str(os.getenv("YOUTUBE_API_KEY")),
    lease_timeout_seconds=lease_timeout_seconds,
    segment_duration_seconds=segment_duration_seconds,
    min_tail_segment_seconds=min_tail_segment_seconds,
    max_questions_per_segment=max_questions_per_segment,
    default_video_duration_seconds=default_video_duration_seconds,
    generation_concurrency=generation_concurrency,
    storage_concurrency=storage_concurrency,
    context_window_seconds=context_window_seconds,
    context_question_count=context_question_count,
    task_service_provider=task_service_provider,
    cloud_tasks_queue_path=_optional_str(os.getenv("VIDQUIZ_CLOUD_TASKS_QUEUE_PATH")),
    base_url=_optional_str(os.getenv("VIDQUIZ_BASE_URL")),
    task_secret=_optional_str(os.getenv("VIDQUIZ_TASK_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("VIDQUIZ_DEBUG"))
  pg_connect_timeout = int(os.getenv("VIDQUIZ_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("VIDQUIZ_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("VIDQUIZ_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
