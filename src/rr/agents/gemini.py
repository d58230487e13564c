"""Gemini CLI integration.

Gemini streams assistant text as deltas; the final answer is their
concatenation.  Non-JSON chatter such as "YOLO mode is enabled" is left to
the raw passthrough path.
"""

from __future__ import annotations

import json
from functools import partial
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

parse_event = partial(parse_jsonl_event, requires_object_prefix=True)


def build_args(
    role: AgentRole,
    prompt: str,
    model: Optional[str] = None,
    options: Optional[ReviewOptions] = None,
    provider: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> List[str]:
    args = ["--yolo"]
    if model:
        args.extend(["--model", model])
    args.extend(["--output-format", "stream-json", "--prompt", prompt])
    return args


def format_event(event: Dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    if kind == "message":
        if event.get("role") == "user":
            return None
        return str(event.get("content", ""))
    if kind == "tool_use":
        return f"--- Tool: {event.get('tool_name')} ---\nInput: {json.dumps(event.get('parameters'))}"
    if kind == "tool_result":
        cleaned = strip_system_reminders(event.get("output"))
        return f"--- Tool Result ---\n{cleaned}" if cleaned else ""
    if kind == "result":
        return f"=== Result: {event.get('status')} ==="
    return None


def extract_result(output: str) -> Optional[str]:
    parts: List[str] = []
    for line in output.splitlines():
        event = parse_event(line)
        if (
            event
            and event.get("type") == "message"
            and event.get("role") == "assistant"
            and event.get("delta")
        ):
            parts.append(str(event.get("content", "")))
    return "".join(parts) or None


format_line = create_line_formatter(parse_event, format_event)

DESCRIPTOR = AgentDescriptor(
    command="gemini",
    build_args=build_args,
    build_env=default_build_env,
    format_line=format_line,
    extract_result=extract_result,
)

__all__ = ["DESCRIPTOR", "build_args", "extract_result", "format_event", "format_line"]
