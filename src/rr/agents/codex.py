"""Codex CLI integration (``codex exec --json``)."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from ..config import AgentRole
from .registry import (
    AgentDescriptor,
    ReviewOptions,
    create_line_formatter,
    default_build_env,
    parse_jsonl_event,
)

DEFAULT_REASONING_EFFORT = "high"
REASONING_EFFORTS = frozenset({"low", "medium", "high", "xhigh"})

_SHELL_WRAPPER_RE = re.compile(r"(?:/bin/\w+|-lc)\s+'([^']+)'$")


def resolve_reasoning_effort(reasoning: Optional[str]) -> str:
    if reasoning in REASONING_EFFORTS:
        return reasoning  # type: ignore[return-value]
    return DEFAULT_REASONING_EFFORT


def build_args(
    role: AgentRole,
    prompt: str,
    model: Optional[str] = None,
    options: Optional[ReviewOptions] = None,
    provider: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> List[str]:
    """Assemble ``codex exec`` arguments.

    Reviewers stream JSON events so the final agent message can be recovered.
    Fixers and simplifiers run in ``--full-auto`` mode with the prompt as the
    trailing positional argument.
    """
    effort = ["--config", f"model_reasoning_effort={resolve_reasoning_effort(reasoning)}"]
    model_args = ["--model", model] if model else []

    if role is not AgentRole.REVIEWER:
        args = ["exec", "--full-auto", *effort, *model_args]
        if prompt:
            args.append(prompt)
        return args

    return ["exec", "--full-auto", "--json", *effort, *model_args, prompt]


def _shell_command(command: Any) -> str:
    text = str(command or "")
    match = _SHELL_WRAPPER_RE.search(text)
    return match.group(1) if match else text


def format_event(event: Dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    item = event.get("item")
    if not isinstance(item, dict):
        return None
    item_type = item.get("type")

    if kind == "item.started":
        if item_type == "command_execution":
            return f"--- Command: {_shell_command(item.get('command'))} ---"
        return None

    if kind != "item.completed":
        return None
    if item_type == "reasoning":
        return f"[Thinking] {item.get('text', '')}"
    if item_type == "command_execution":
        if item.get("aggregated_output"):
            return f"--- Output ---\n{item['aggregated_output']}"
        return f"--- Command: {_shell_command(item.get('command'))} (exit: {item.get('exit_code')}) ---"
    if item_type == "agent_message":
        return f"=== Result ===\n{item.get('text', '')}"
    return None


def extract_result(output: str) -> Optional[str]:
    """Return the text of the last completed ``agent_message`` item."""
    last: Optional[str] = None
    for line in output.splitlines():
        event = parse_jsonl_event(line)
        if not event or event.get("type") != "item.completed":
            continue
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message" and isinstance(item.get("text"), str):
            last = item["text"]
    return last


format_line = create_line_formatter(parse_jsonl_event, format_event)

DESCRIPTOR = AgentDescriptor(
    command="codex",
    build_args=build_args,
    build_env=default_build_env,
    format_line=format_line,
    extract_result=extract_result,
)

__all__ = [
    "DEFAULT_REASONING_EFFORT",
    "DESCRIPTOR",
    "build_args",
    "extract_result",
    "format_event",
    "format_line",
    "resolve_reasoning_effort",
]
