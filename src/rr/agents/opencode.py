"""OpenCode CLI integration; plain text output, no JSONL stream."""

from __future__ import annotations

from typing import List, Optional

from ..config import AgentRole
from .registry import AgentDescriptor, ReviewOptions, default_build_env


def build_args(
    role: AgentRole,
    prompt: str,
    model: Optional[str] = None,
    options: Optional[ReviewOptions] = None,
    provider: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> List[str]:
    args = ["run"]
    if model:
        args.extend(["--model", model])
    if role is AgentRole.REVIEWER:
        args.append(prompt or "/review")
    else:
        args.append(prompt)
    return args


def extract_result(output: str) -> Optional[str]:
    return output.strip() or None


DESCRIPTOR = AgentDescriptor(
    command="opencode",
    build_args=build_args,
    build_env=default_build_env,
    extract_result=extract_result,
)

__all__ = ["DESCRIPTOR", "build_args", "extract_result"]
