"""Filesystem-friendly slugs for run identifiers and log file names."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Pattern

_SLUG_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "run", max_length: int = 60) -> str:
    """Normalize ``value`` into a lowercase slug no longer than ``max_length``."""
    slug = _normalize((value or "").strip().lower())
    if not slug:
        slug = _normalize((fallback or "").strip().lower()) or "run"
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix or slug[0]}-{digest}"


def timestamped_slug(value: str | None, *, prefix: str = "", when: datetime | None = None) -> str:
    """Slug prefixed with a sortable UTC timestamp, used for log file names."""
    moment = (when or datetime.now(timezone.utc)).astimezone(timezone.utc)
    stamp = moment.strftime("%Y%m%dT%H%M%S%fZ")
    parts = [part for part in (prefix, stamp, slugify(value)) if part]
    return "-".join(parts)


def _normalize(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")
