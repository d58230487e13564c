"""Append-only JSONL session logs.

Each session writes ``<logs_root>/<project-slug>/<timestamp>[_<branch>].jsonl``:
one ``system`` entry, one ``iteration`` entry per completed iteration and a
``session_end`` entry when the run reaches a terminal state.  Every append is
flushed and fsynced so that a crash never loses a finished iteration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .config import AgentSettings
from .structured import FixSummary, ReviewSummary
from .utils.slug import project_slug, sanitize_for_filename

__all__ = [
    "IterationEntry",
    "IterationError",
    "LogEntry",
    "LogSession",
    "SessionEndEntry",
    "SystemEntry",
    "append_entry",
    "create_log_session",
    "derive_status",
    "generate_log_filename",
    "latest_project_session",
    "list_project_sessions",
    "list_sessions",
    "read_log",
]

LOGGER = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"

SessionStatus = Literal["completed", "max_iterations", "failed", "interrupted"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LogModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class IterationError(LogModel):
    """Fatal condition that ended an iteration."""

    phase: str
    message: str
    exit_code: Optional[int] = None


class SystemEntry(LogModel):
    type: Literal["system"] = "system"
    timestamp: datetime = Field(default_factory=utc_now)
    project_path: str
    git_branch: Optional[str] = None
    reviewer: AgentSettings
    fixer: AgentSettings
    code_simplifier: Optional[AgentSettings] = None
    max_iterations: int
    review_options: Optional[Dict[str, Any]] = None


class IterationEntry(LogModel):
    type: Literal["iteration"] = "iteration"
    timestamp: datetime = Field(default_factory=utc_now)
    iteration: int = Field(ge=1)
    duration_ms: Optional[int] = None
    review: Optional[ReviewSummary] = None
    fixes: Optional[FixSummary] = None
    error: Optional[IterationError] = None


class SessionEndEntry(LogModel):
    type: Literal["session_end"] = "session_end"
    timestamp: datetime = Field(default_factory=utc_now)
    status: SessionStatus
    reason: str
    iterations: int = Field(ge=0)
    error: Optional[IterationError] = None


LogEntry = Annotated[
    Union[SystemEntry, IterationEntry, SessionEndEntry],
    Field(discriminator="type"),
]
_ENTRY_ADAPTER: TypeAdapter = TypeAdapter(LogEntry)


@dataclass(slots=True, frozen=True)
class LogSession:
    """A session log file discovered on disk."""

    path: Path
    name: str
    project_name: str
    modified: float


def generate_log_filename(timestamp: datetime, branch: str | None = None) -> str:
    stamp = timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    branch_slug = sanitize_for_filename(branch) if branch else ""
    if branch_slug:
        return f"{stamp}_{branch_slug}{LOG_SUFFIX}"
    return f"{stamp}{LOG_SUFFIX}"


def project_log_dir(logs_root: Path | str, project_path: Path | str) -> Path:
    return Path(logs_root) / project_slug(Path(project_path).resolve())


def create_log_session(
    logs_root: Path | str,
    project_path: Path | str,
    branch: str | None = None,
    *,
    now: datetime | None = None,
) -> Path:
    """Create the project log directory and return a fresh log file path.

    The file itself is created empty so that two sessions started within the
    same second never share a log.
    """
    directory = project_log_dir(logs_root, project_path)
    directory.mkdir(parents=True, exist_ok=True)
    filename = generate_log_filename(now or utc_now(), branch)
    stem = filename[: -len(LOG_SUFFIX)]
    candidate = directory / filename
    counter = 1
    while True:
        try:
            candidate.touch(exist_ok=False)
            return candidate
        except FileExistsError:
            candidate = directory / f"{stem}-{counter}{LOG_SUFFIX}"
            counter += 1


def append_entry(log_path: Path | str, entry: LogModel) -> None:
    """Append ``entry`` as one JSON line and force it to disk."""

    line = entry.model_dump_json(exclude_none=True)
    with Path(log_path).open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def read_log(log_path: Path | str) -> List[LogModel]:
    """Parse a session log, skipping lines that do not validate."""

    path = Path(log_path)
    if not path.exists():
        return []
    entries: List[LogModel] = []
    with path.open("r", encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entries.append(_ENTRY_ADAPTER.validate_json(line))
            except ValidationError as error:
                LOGGER.warning("Skipping malformed log line %s:%d (%s)", path, number, error.error_count())
    return entries


def _sessions_in(directory: Path, project_name: str) -> List[LogSession]:
    sessions = [
        LogSession(
            path=path,
            name=path.name,
            project_name=project_name,
            modified=path.stat().st_mtime,
        )
        for path in directory.glob(f"*{LOG_SUFFIX}")
        if path.is_file()
    ]
    sessions.sort(key=lambda item: item.modified, reverse=True)
    return sessions


def list_sessions(logs_root: Path | str) -> List[LogSession]:
    """Return every session log under ``logs_root``, newest first."""

    root = Path(logs_root)
    if not root.is_dir():
        return []
    sessions: List[LogSession] = []
    for directory in root.iterdir():
        if directory.is_dir():
            sessions.extend(_sessions_in(directory, directory.name))
    sessions.sort(key=lambda item: item.modified, reverse=True)
    return sessions


def list_project_sessions(logs_root: Path | str, project_path: Path | str) -> List[LogSession]:
    directory = project_log_dir(logs_root, project_path)
    if not directory.is_dir():
        return []
    return _sessions_in(directory, directory.name)


def latest_project_session(logs_root: Path | str, project_path: Path | str) -> Optional[LogSession]:
    sessions = list_project_sessions(logs_root, project_path)
    return sessions[0] if sessions else None


def derive_status(entries: List[LogModel]) -> str:
    """Summarise a session log as a single status word.

    A ``session_end`` entry is authoritative.  Without one the session either
    is still running or died before it could record an outcome, in which case
    an error on the last iteration reports ``failed`` and anything else
    ``incomplete``.
    """
    for entry in reversed(entries):
        if isinstance(entry, SessionEndEntry):
            return entry.status
    iterations = [entry for entry in entries if isinstance(entry, IterationEntry)]
    if not iterations:
        return "unknown"
    if iterations[-1].error is not None:
        return "failed"
    return "incomplete"
