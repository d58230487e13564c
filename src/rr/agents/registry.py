"""Descriptor types shared by every agent integration."""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..config import AgentRole
from .stream import LineFormatter

__all__ = [
    "AgentDescriptor",
    "AgentRegistry",
    "ArgsBuilder",
    "EnvBuilder",
    "ReviewOptions",
    "create_line_formatter",
    "default_build_env",
    "parse_jsonl_event",
    "strip_system_reminders",
]


@dataclass(slots=True, frozen=True)
class ReviewOptions:
    """Scope of the changes a reviewer is asked to look at."""

    base_branch: Optional[str] = None
    commit_sha: Optional[str] = None
    custom_instructions: Optional[str] = None


ArgsBuilder = Callable[
    [AgentRole, str, Optional[str], Optional[ReviewOptions], Optional[str], Optional[str]],
    List[str],
]
EnvBuilder = Callable[[Optional[str]], Dict[str, str]]
ResultExtractor = Callable[[str], Optional[str]]


def default_build_env(reasoning: Optional[str] = None) -> Dict[str, str]:
    """Pass the current process environment through unchanged."""
    return os.environ.copy()


@dataclass(slots=True, frozen=True)
class AgentDescriptor:
    """How to launch one agent CLI and how to read what it prints.

    ``format_line`` doubles as the JSONL switch: agents that provide one are
    streamed line by line, everything else is forwarded as raw text.
    ``extract_result`` recovers the agent's final answer from the raw output
    when that answer is embedded inside JSON events.
    """

    command: str
    build_args: ArgsBuilder
    build_env: EnvBuilder = default_build_env
    format_line: Optional[LineFormatter] = None
    extract_result: Optional[ResultExtractor] = None

    @property
    def uses_jsonl(self) -> bool:
        return self.format_line is not None

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None


AgentRegistry = Mapping[str, AgentDescriptor]


def parse_jsonl_event(line: str, *, requires_object_prefix: bool = False) -> Optional[Dict[str, Any]]:
    """Parse one JSONL line into an event mapping carrying a string ``type``."""
    stripped = line.strip()
    if not stripped:
        return None
    if requires_object_prefix and not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("type"), str):
        return None
    return parsed


def create_line_formatter(
    parser: Callable[[str], Optional[Dict[str, Any]]],
    display: Callable[[Dict[str, Any]], Optional[str]],
) -> LineFormatter:
    """Combine an event parser and a display renderer into a line formatter.

    Recognised events that render to nothing are suppressed (``""``), lines the
    parser does not recognise are left to the caller (``None``).
    """

    def _format(line: str) -> Optional[str]:
        event = parser(line)
        if event is None:
            return None
        return display(event) or ""

    return _format


_SYSTEM_REMINDER_RE = re.compile(r"<system-reminder>[\s\S]*?</system-reminder>\s*")


def strip_system_reminders(text: Any) -> str:
    """Remove ``<system-reminder>`` blocks that some agents echo into tool output."""
    normalised = text if isinstance(text, str) else str(text if text is not None else "")
    return _SYSTEM_REMINDER_RE.sub("", normalised).strip()
