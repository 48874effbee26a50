"""Timestamp normalisation for provider output.

The content-analysis model does not reliably emit plain seconds. Depending on the
prompt and the video it returns one of:

- base-60 integers where ``130`` means 1:30 (90 seconds),
- decimal minutes where ``3.37`` means 3 minutes 37 seconds,
- ``"MM:SS"`` or ``"H:MM:SS"`` strings,
- plain seconds (``106.582``).

``to_seconds`` maps all of these onto seconds. Values between 10 and 99 are always
treated as seconds because both alternative readings are ambiguous there.
"""

from __future__ import annotations

import math
from typing import Any


def _parse_clock(value: str) -> float | None:
  parts = value.strip().split(":")
  try:
    if len(parts) == 2:
      return int(parts[0]) * 60 + float(parts[1])
    if len(parts) == 3:
      return int(parts[0]) * 3600 + int(parts[1]) * 60 + float(parts[2])
  except ValueError:
    return None
  return None


def to_seconds(raw: float | int | str | None) -> float:
  """Convert a provider timestamp to seconds."""

  if raw is None:
    return 0.0

  if isinstance(raw, str):
    clock = _parse_clock(raw)
    if clock is not None:
      return clock
    try:
      raw = float(raw)
    except ValueError as exc:
      raise ValueError(f"Unparseable timestamp: {raw!r}") from exc

  value = float(raw)
  if math.isnan(value) or value < 0:
    raise ValueError(f"Invalid timestamp: {raw!r}")

  if value >= 100:
    integer_part = math.floor(value)
    fractional_part = value - integer_part
    minutes, seconds = divmod(integer_part, 100)
    # Only a valid clock reading when the two low digits are below 60.
    if seconds < 60:
      return minutes * 60 + seconds + fractional_part
    return value

  if value < 10:
    integer_part = math.floor(value)
    fractional_part = value - integer_part
    if fractional_part > 0:
      possible_seconds = round(fractional_part * 100)
      if possible_seconds < 60:
        return float(integer_part * 60 + possible_seconds)

  return value


def format_seconds(seconds: float) -> str:
  """Format seconds as ``M:SS`` or ``H:MM:SS`` for logs and prompts."""

  total = int(max(seconds, 0))
  hours, remainder = divmod(total, 3600)
  minutes, secs = divmod(remainder, 60)
  if hours:
    return f"{hours}:{minutes:02d}:{secs:02d}"
  return f"{minutes}:{secs:02d}"


def normalize_clock_fields(item: Any, *names: str) -> Any:
  """Return a copy of a provider dict with the named timestamp fields in seconds.

  Only raw provider payloads go through here. Values already stored in seconds
  must not be normalised again, since e.g. ``200`` would read as 2:00.
  """

  if not isinstance(item, dict):
    return item
  normalized = dict(item)
  for name in names:
    value = normalized.get(name)
    if isinstance(value, list):
      normalized[name] = [to_seconds(entry) for entry in value]
    elif value is not None:
      normalized[name] = to_seconds(value)
  return normalized
