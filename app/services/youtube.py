"""YouTube URL helpers and duration lookup."""

from __future__ import annotations

import logging
import re

import httpx

logger = logging.getLogger(__name__)

YOUTUBE_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"

_VIDEO_ID_RE = re.compile(r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([^&\n?#/]+)")
_BARE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_DURATION_RE = re.compile(r"^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")


def extract_video_id(url: str) -> str | None:
  """Return the video id from a watch, short or embed URL (or a bare id)."""
  candidate = url.strip()
  if _BARE_ID_RE.match(candidate):
    return candidate
  match = _VIDEO_ID_RE.search(candidate)
  return match.group(1) if match else None


def watch_url(video_ref: str) -> str:
  """Normalise a stored video reference into a URL the model can fetch."""
  if video_ref.startswith(("http://", "https://")):
    return video_ref
  return f"https://www.youtube.com/watch?v={video_ref}"


def parse_iso8601_duration(raw: str) -> int:
  """Convert `PT1H2M3S`-style durations to seconds; unparseable input is 0."""
  match = _DURATION_RE.match(raw.strip())
  if not match:
    return 0
  days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
  return days * 86400 + hours * 3600 + minutes * 60 + seconds


async def fetch_video_duration(video_ref: str, *, api_key: str | None, client: httpx.AsyncClient | None = None) -> int | None:
  """Look up the video duration in seconds, or None when it cannot be determined."""
  if not api_key:
    logger.warning("YOUTUBE_API_KEY not configured; cannot determine video duration.")
    return None
  video_id = extract_video_id(video_ref)
  if video_id is None:
    logger.warning("Could not extract a YouTube video id from %s.", video_ref)
    return None

  params = {"id": video_id, "part": "contentDetails", "key": api_key}
  try:
    if client is None:
      async with httpx.AsyncClient(timeout=10.0) as owned:
        response = await owned.get(YOUTUBE_VIDEOS_URL, params=params)
    else:
      response = await client.get(YOUTUBE_VIDEOS_URL, params=params)
    response.raise_for_status()
    items = response.json().get("items") or []
  except (httpx.HTTPError, ValueError) as exc:
    logger.error("YouTube duration lookup failed for %s: %s", video_id, exc)
    return None

  if not items:
    logger.error("YouTube video %s not found.", video_id)
    return None
  duration = parse_iso8601_duration(items[0].get("contentDetails", {}).get("duration", ""))
  return duration or None
