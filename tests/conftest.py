from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rr.agents.registry import AgentDescriptor, ReviewOptions  # noqa: E402
from rr.config import AgentRole, Config  # noqa: E402
from rr.structured import (  # noqa: E402
    FIX_SUMMARY_END_TOKEN,
    FIX_SUMMARY_START_TOKEN,
    REVIEW_SUMMARY_END_TOKEN,
    REVIEW_SUMMARY_START_TOKEN,
)


def emit(text: str, exit_code: int = 0, stderr: str = "") -> str:
    """Return a ``python -c`` script printing ``text`` and exiting with ``exit_code``."""

    lines = ["import sys", f"sys.stdout.write({text!r})", "sys.stdout.flush()"]
    if stderr:
        lines.append(f"sys.stderr.write({stderr!r})")
    lines.append(f"sys.exit({exit_code})")
    return "\n".join(lines)


def sleeper(seconds: float, before: str = "") -> str:
    return "\n".join(
        [
            "import sys, time",
            f"sys.stdout.write({before!r})",
            "sys.stdout.flush()",
            f"time.sleep({seconds})",
        ]
    )


def finding(title: str = "Null check missing", priority: int = 1) -> Dict[str, Any]:
    return {
        "title": title,
        "body": "The value can be None here.",
        "confidence_score": 0.8,
        "priority": priority,
        "code_location": {
            "absolute_file_path": "/repo/app.py",
            "line_range": {"start": 10, "end": 12},
        },
    }


def review_output(findings: Optional[List[Dict[str, Any]]] = None, preamble: str = "Looking around.\n") -> str:
    payload = {
        "findings": findings or [],
        "overall_correctness": "patch is incorrect" if findings else "patch is correct",
        "overall_explanation": "Reviewed the change.",
        "overall_confidence_score": 0.9,
    }
    return f"{preamble}{REVIEW_SUMMARY_START_TOKEN}\n{json.dumps(payload)}\n{REVIEW_SUMMARY_END_TOKEN}\n"


def fix_output(decision: str = "APPLY_MOST", fixed: int = 1) -> str:
    payload = {
        "decision": decision,
        "fixes": [
            {
                "id": index + 1,
                "title": "Null check missing",
                "priority": "P1",
                "file": "app.py",
                "claim": "value can be None",
                "evidence": "app.py:10",
                "fix": "added a guard",
            }
            for index in range(fixed)
        ],
        "skipped": [],
    }
    return f"Done.\n{FIX_SUMMARY_START_TOKEN}\n{json.dumps(payload)}\n{FIX_SUMMARY_END_TOKEN}\n"


class ScriptedAgent:
    """Fake agent that runs the next queued ``python -c`` script for each role."""

    def __init__(self) -> None:
        self.scripts: Dict[AgentRole, List[str]] = {role: [] for role in AgentRole}
        self.calls: List[Tuple[AgentRole, str]] = []

    def queue(self, role: AgentRole, *scripts: str) -> None:
        self.scripts[role].extend(scripts)

    def prompts_for(self, role: AgentRole) -> List[str]:
        return [prompt for called, prompt in self.calls if called is role]

    def build_args(
        self,
        role: AgentRole,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[ReviewOptions] = None,
        provider: Optional[str] = None,
        reasoning: Optional[str] = None,
    ) -> List[str]:
        self.calls.append((role, prompt))
        queued = self.scripts[role]
        script = queued.pop(0) if queued else emit("no script queued", exit_code=3)
        return ["-c", script]

    def descriptor(self) -> AgentDescriptor:
        return AgentDescriptor(command=sys.executable, build_args=self.build_args)


@pytest.fixture()
def scripted_agent() -> ScriptedAgent:
    return ScriptedAgent()


def make_config(**overrides: Any) -> Config:
    data: Dict[str, Any] = {
        "reviewer": {"agent": "fake"},
        "fixer": {"agent": "fake"},
        "max_iterations": 3,
        "iteration_timeout_ms": 20_000,
        "retry": {"max_retries": 0, "base_delay_ms": 0, "max_delay_ms": 0},
    }
    data.update(overrides)
    return Config.model_validate(data)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    (project / "app.py").write_text("def value():\n    return None\n", encoding="utf-8")
    return project


@pytest.fixture()
def logs_root(tmp_path: Path) -> Path:
    return tmp_path / "logs"
