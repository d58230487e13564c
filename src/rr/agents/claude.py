"""Claude CLI integration (``--output-format stream-json``)."""

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
)


def build_args(
    role: AgentRole,
    prompt: str,
    model: Optional[str] = None,
    options: Optional[ReviewOptions] = None,
    provider: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> List[str]:
    args: List[str] = []
    if model:
        args.extend(["--model", model])
    args.extend(
        [
            "-p",
            prompt,
            "--dangerously-skip-permissions",
            "--verbose",
            "--output-format",
            "stream-json",
        ]
    )
    return args


def _content_blocks(event: Dict[str, Any]) -> Optional[List[Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, list) else None


def _format_block(block: Any) -> str:
    if not isinstance(block, dict):
        return ""
    kind = block.get("type")
    if kind == "thinking":
        return f"--- Thinking ---\n{block.get('thinking', '')}"
    if kind == "text":
        return str(block.get("text", ""))
    if kind == "tool_use":
        return f"--- Tool: {block.get('name')} ---\nInput: {json.dumps(block.get('input'))}"
    if kind == "tool_result":
        return f"--- Tool Result ---\n{block.get('content', '')}"
    return ""


def format_event(event: Dict[str, Any]) -> Optional[str]:
    """Render one stream event for the terminal, ``None`` to hide it."""
    kind = event.get("type")
    if kind in {"assistant", "user"}:
        blocks = _content_blocks(event)
        if blocks is None:
            return None
        if kind == "user":
            blocks = [block for block in blocks if isinstance(block, dict) and block.get("type") in {"tool_result", "text"}]
        return "\n\n".join(part for part in map(_format_block, blocks) if part)
    if kind == "result" and isinstance(event.get("result"), str):
        return f"=== Result ===\n{event['result']}"
    return None


def extract_result(output: str) -> Optional[str]:
    """Return the ``result`` field of the last result event."""
    last: Optional[str] = None
    for line in output.splitlines():
        event = parse_jsonl_event(line)
        if event and event.get("type") == "result" and isinstance(event.get("result"), str):
            last = event["result"]
    return last


format_line = create_line_formatter(parse_jsonl_event, format_event)

DESCRIPTOR = AgentDescriptor(
    command="claude",
    build_args=build_args,
    build_env=default_build_env,
    format_line=format_line,
    extract_result=extract_result,
)

__all__ = ["DESCRIPTOR", "build_args", "extract_result", "format_event", "format_line"]
