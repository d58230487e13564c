"""Utility helpers shared across ralph-review modules."""

from .slug import abbreviate_slug, project_slug, sanitize_for_filename

__all__ = ["abbreviate_slug", "project_slug", "sanitize_for_filename"]
