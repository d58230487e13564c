"""Droid CLI integration (``droid exec --output-format stream-json``)."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from ..config import AgentRole
from .registry import (
    AgentDescriptor,
    ReviewOptions,
    create_line_formatter,
    default_build_env,
    parse_jsonl_event,
    strip_system_reminders,
)

DEFAULT_MODEL = "gpt-5.2-codex"


def build_args(
    role: AgentRole,
    prompt: str,
    model: Optional[str] = None,
    options: Optional[ReviewOptions] = None,
    provider: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> List[str]:
    return [
        "exec",
        "--auto",
        "medium",
        "--model",
        model or DEFAULT_MODEL,
        "--reasoning-effort",
        "high",
        "--output-format",
        "stream-json",
        prompt,
    ]


def format_event(event: Dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    if kind == "message":
        if event.get("role") == "user":
            return None
        return str(event.get("text", ""))
    if kind == "tool_call":
        return f"--- Tool: {event.get('toolName')} ---\nInput: {json.dumps(event.get('parameters'))}"
    if kind == "tool_result":
        return f"--- Tool Result ---\n{strip_system_reminders(event.get('value'))}"
    if kind == "completion":
        return f"=== Result ===\n{event.get('finalText', '')}"
    return None


def extract_result(output: str) -> Optional[str]:
    """Return ``finalText`` of the last completion event."""
    last: Optional[str] = None
    for line in output.splitlines():
        event = parse_jsonl_event(line)
        if event and event.get("type") == "completion" and isinstance(event.get("finalText"), str):
            last = event["finalText"]
    return last


format_line = create_line_formatter(parse_jsonl_event, format_event)

DESCRIPTOR = AgentDescriptor(
    command="droid",
    build_args=build_args,
    build_env=default_build_env,
    format_line=format_line,
    extract_result=extract_result,
)

__all__ = ["DESCRIPTOR", "build_args", "extract_result", "format_event", "format_line"]
