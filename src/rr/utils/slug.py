"""Filename-safe names derived from project paths and branch names."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE_PATTERN: Pattern[str] = re.compile(r"\s+")
_HYPHEN_COLLAPSE: Pattern[str] = re.compile(r"-{2,}")

MAX_SEGMENT_LENGTH = 120
UNKNOWN_PROJECT = "unknown-project"


def sanitize_for_filename(value: str | None, *, max_length: int = MAX_SEGMENT_LENGTH) -> str:
    """Replace unsafe characters and whitespace with single hyphens, lowercased.

    The result never contains ``--`` which lets callers join two segments
    with a double hyphen unambiguously.
    """
    slug = _UNSAFE_PATTERN.sub("-", value or "")
    slug = _WHITESPACE_PATTERN.sub("-", slug)
    slug = _HYPHEN_COLLAPSE.sub("-", slug).strip("-").lower()
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def project_slug(project_path: Path | str) -> str:
    """Return the directory-safe name used for a project's logs and locks."""
    return sanitize_for_filename(str(project_path)) or UNKNOWN_PROJECT


def abbreviate_slug(segment: str, *, max_length: int = MAX_SEGMENT_LENGTH) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    if len(segment) <= max_length:
        return segment
    digest = hashlib.sha256(segment.encode("utf-8")).hexdigest()[:8]
    prefix = segment[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


__all__ = ["UNKNOWN_PROJECT", "abbreviate_slug", "project_slug", "sanitize_for_filename"]
