"""External agent integrations and the process runner that drives them."""

from __future__ import annotations

from typing import Dict

from . import claude, codex, droid, gemini, opencode
from .registry import AgentDescriptor, AgentRegistry, ReviewOptions
from .runner import AgentResult, AgentRunner
from .stream import StreamCapture, StreamCaptureError, capture_stream


def default_registry() -> Dict[str, AgentDescriptor]:
    """Return a fresh mapping of every built-in agent descriptor."""
    return {
        "claude": claude.DESCRIPTOR,
        "codex": codex.DESCRIPTOR,
        "droid": droid.DESCRIPTOR,
        "gemini": gemini.DESCRIPTOR,
        "opencode": opencode.DESCRIPTOR,
    }


__all__ = [
    "AgentDescriptor",
    "AgentRegistry",
    "AgentResult",
    "AgentRunner",
    "ReviewOptions",
    "StreamCapture",
    "StreamCaptureError",
    "capture_stream",
    "default_registry",
]
