# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions used by the operator."""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Kubernetes object names used as label values are limited to 63 characters
MAX_NAME_LENGTH = 63

_RETENTION_PERIOD_REGEX = re.compile(r"(\d+)(y|mo|d|h|m)", re.IGNORECASE)
_RETENTION_UNITS = {
    "y": timedelta(days=365),
    "mo": timedelta(days=30),
    "d": timedelta(days=1),
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
}


def utcnow() -> datetime:
    """Return the current time in UTC, truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_time(value: datetime) -> str:
    """Format a datetime as an RFC3339 UTC timestamp."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(RFC3339_FORMAT)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339 timestamp, returning None for empty values."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_duration(value: timedelta) -> str:
    """Format a duration the way Kubernetes serialises durations, e.g. ``1h2m3s``.

    The duration is rounded to whole seconds first.
    """
    seconds = int(round(value.total_seconds()))
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    out += f"{seconds}s"
    return sign + out


def parse_retention_period(value: Optional[str]) -> Optional[timedelta]:
    """Convert a retention period such as ``7d``, ``1y``, ``3mo`` or ``12h30m`` to a duration.

    Args:
        value: The retention period. Empty values mean "keep forever".

    Returns:
        The duration, or None when no retention is configured.

    Raises:
        ValueError: If the retention period can not be parsed.
    """
    if not value:
        return None
    matches = _RETENTION_PERIOD_REGEX.findall(value)
    if not matches or "".join(n + u for n, u in matches).lower() != value.lower():
        raise ValueError(f"invalid retention period: {value!r}")
    total = timedelta()
    for number, unit in matches:
        total += int(number) * _RETENTION_UNITS[unit.lower()]
    return total


def build_object_name(*parts: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Build a deterministic Kubernetes object name from its parts.

    Names that would exceed ``max_length`` are truncated and suffixed with a
    short hash of the full name, so different parts never collide.
    """
    name = "-".join(p for p in parts if p).lower()
    if len(name) <= max_length:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:10]
    return f"{name[: max_length - len(digest) - 1].rstrip('-')}-{digest}"
