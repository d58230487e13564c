"""File based session locks, one per (project, branch).

Lock files live directly under the logs root as ``<project>[--<branch>].lock``
and hold a small JSON document describing the owning session.  Ownership is
decided by PID liveness alone; a lock whose owner is gone is stale and may be
reclaimed by the next session.  Nothing here keeps in-memory state, every
call goes back to the filesystem.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import DEFAULT_BRANCH_SENTINEL
from .utils.slug import project_slug, sanitize_for_filename

__all__ = [
    "ActiveSession",
    "LockData",
    "LockError",
    "LockRegistry",
    "PENDING_GRACE_SECONDS",
    "STOPPING_STATE",
    "SessionAlreadyRunningError",
    "is_process_alive",
]

LOGGER = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
RECLAIM_SUFFIX = ".reclaim"
STOPPING_STATE = "stopping"

# An unreadable lock younger than this is assumed to be mid-write.
PENDING_GRACE_SECONDS = 30.0


class LockError(RuntimeError):
    """Raised when a lock file cannot be created or inspected."""


class SessionAlreadyRunningError(LockError):
    """Raised when a live session already holds the lock for a project/branch."""

    def __init__(self, message: str, session: "ActiveSession | None" = None) -> None:
        super().__init__(message)
        self.session = session


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LockData(BaseModel):
    """Metadata persisted inside a lock file."""

    model_config = ConfigDict(extra="ignore")

    session_name: str
    pid: int
    started_at: datetime = Field(default_factory=utc_now)
    project_path: str
    branch: Optional[str] = None
    iteration: Optional[int] = None
    state: Optional[str] = None
    log_path: Optional[str] = None


class ActiveSession(LockData):
    """Lock metadata together with the file it was read from."""

    lock_path: str

    def to_lock_data(self) -> LockData:
        return LockData.model_validate(self.model_dump(exclude={"lock_path"}))

    @property
    def stop_requested(self) -> bool:
        return self.state == STOPPING_STATE


def is_process_alive(pid: int) -> bool:
    """Return ``True`` when ``pid`` refers to a running process.

    A process we are not allowed to signal still exists, so ``PermissionError``
    counts as alive.  PID reuse can make a dead owner look alive.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class LockRegistry:
    """Cross-process registry of running review sessions."""

    def __init__(
        self,
        logs_root: Path | str,
        default_branch: str = DEFAULT_BRANCH_SENTINEL,
        *,
        grace_seconds: float = PENDING_GRACE_SECONDS,
    ) -> None:
        self.root = Path(logs_root)
        self.default_branch = default_branch
        self.grace_seconds = grace_seconds

    # ----------------------------------------------------------------- naming
    def normalise_branch(self, branch: str | None) -> str | None:
        """Map empty values and the default-branch sentinel to ``None``."""

        if branch is None:
            return None
        cleaned = branch.strip()
        if not cleaned or cleaned == self.default_branch:
            return None
        return cleaned

    def lock_path(self, project: Path | str, branch: str | None = None) -> Path:
        name = project_slug(Path(project).resolve())
        normalised = self.normalise_branch(branch)
        if normalised:
            branch_slug = sanitize_for_filename(normalised)
            if branch_slug:
                name = f"{name}--{branch_slug}"
        return self.root / f"{name}{LOCK_SUFFIX}"

    # ---------------------------------------------------------------- acquire
    def acquire(
        self,
        project: Path | str,
        branch: str | None = None,
        session_name: str | None = None,
        *,
        log_path: Path | str | None = None,
    ) -> ActiveSession:
        """Create the lock for ``project``/``branch`` or raise if it is held."""

        project_path = Path(project).resolve()
        path = self.lock_path(project_path, branch)
        session = ActiveSession(
            session_name=session_name or default_session_name(project_path),
            pid=os.getpid(),
            project_path=str(project_path),
            branch=self.normalise_branch(branch),
            iteration=0,
            state="starting",
            log_path=str(log_path) if log_path else None,
            lock_path=str(path),
        )
        self.root.mkdir(parents=True, exist_ok=True)

        for attempt in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if attempt == 0 and self._reclaim(path):
                    continue
                existing = self._load(path)
                owner = f" (pid {existing.pid})" if existing else ""
                raise SessionAlreadyRunningError(
                    f"A review session is already running for {project_path}{owner}", existing
                ) from None
            except OSError as error:
                raise LockError(f"Unable to create lock file {path}: {error}") from error

            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(_serialise(session.to_lock_data()))
                handle.flush()
                os.fsync(handle.fileno())
            LOGGER.debug("Acquired %s for pid %s", path, session.pid)
            return session

        raise SessionAlreadyRunningError(f"A review session is already running for {project_path}")

    def _reclaim(self, path: Path) -> bool:
        """Delete a stale lock at ``path``; ``True`` when creation may be retried.

        The stale file is first renamed aside and re-read, so a lock that a
        competing session created after our check is put back instead of
        being deleted.
        """

        existing = self._load(path)
        try:
            stamp = path.stat().st_mtime_ns
        except FileNotFoundError:
            return True
        if existing is None:
            if time.time() - stamp / 1e9 < self.grace_seconds:
                return False
        elif is_process_alive(existing.pid):
            return False

        tombstone = path.with_name(f".{path.name}.{os.getpid()}{RECLAIM_SUFFIX}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return True
        except OSError as error:
            raise LockError(f"Unable to reclaim lock file {path}: {error}") from error

        if not _same_file_state(self._load(tombstone), tombstone, existing, stamp):
            LOGGER.info("Lock %s changed owner while being reclaimed; leaving it in place", path)
            _restore(tombstone, path)
            return False

        if existing is None:
            LOGGER.warning("Removing unreadable lock file %s", path)
        else:
            LOGGER.warning(
                "Reclaiming stale lock %s left by pid %s (%s)",
                path,
                existing.pid,
                existing.session_name,
            )
        tombstone.unlink(missing_ok=True)
        return True

    # -------------------------------------------------------------- inspection
    def read(self, project: Path | str, branch: str | None = None) -> ActiveSession | None:
        """Return the lock for ``project``/``branch`` if one exists and parses."""

        return self._load(self.lock_path(project, branch))

    def list_active(self) -> List[ActiveSession]:
        """Return sessions with a live owner, oldest first."""

        if not self.root.is_dir():
            return []
        sessions: List[ActiveSession] = []
        for path in sorted(self.root.glob(f"*{LOCK_SUFFIX}")):
            session = self._load(path)
            if session is None or not is_process_alive(session.pid):
                continue
            sessions.append(session)
        sessions.sort(key=lambda item: item.started_at)
        return sessions

    def reload(self, session: ActiveSession) -> ActiveSession | None:
        """Re-read the lock file backing ``session``."""

        return self._load(Path(session.lock_path))

    def is_stale(self, session: ActiveSession) -> bool:
        return not is_process_alive(session.pid)

    def cleanup_stale(self, session: ActiveSession) -> bool:
        """Remove ``session``'s lock file when its current owner is dead."""

        path = Path(session.lock_path)
        current = self._load(path)
        if current is None or is_process_alive(current.pid):
            return False
        LOGGER.warning("Removing stale lock %s (pid %s)", path, current.pid)
        path.unlink(missing_ok=True)
        return True

    # ---------------------------------------------------------------- updates
    def update(self, session: ActiveSession, **fields: Any) -> ActiveSession | None:
        """Rewrite progress fields of a lock still owned by ``session``.

        A pending stop request is never overwritten by a progress update.
        Returns ``None`` when the lock is gone or now belongs to someone else.
        """
        path = Path(session.lock_path)
        current = self._load(path)
        if current is None or not _same_owner(current, session):
            return None
        if current.stop_requested and fields.get("state") not in (None, STOPPING_STATE):
            fields.pop("state")
        updated = current.model_copy(update=fields)
        tmp = self._stage(path, updated.to_lock_data())

        # Re-read right before the swap so a stop written meanwhile survives.
        latest = self._load(path)
        if latest is None or not _same_owner(latest, session):
            Path(tmp).unlink(missing_ok=True)
            return None
        if latest.stop_requested and not updated.stop_requested:
            Path(tmp).unlink(missing_ok=True)
            updated = updated.model_copy(update={"state": STOPPING_STATE})
            tmp = self._stage(path, updated.to_lock_data())
        self._commit(tmp, path)
        return updated

    def request_stop(self, session: ActiveSession) -> bool:
        """Mark the lock as ``stopping`` so its owner winds down."""

        path = Path(session.lock_path)
        current = self._load(path)
        if current is None:
            return False
        self._write(path, current.model_copy(update={"state": STOPPING_STATE}).to_lock_data())
        return True

    # ---------------------------------------------------------------- release
    def release(self, session: ActiveSession) -> bool:
        """Delete the lock if it still records ``session`` as its owner."""

        path = Path(session.lock_path)
        current = self._load(path)
        if current is None or not _same_owner(current, session):
            return False
        path.unlink(missing_ok=True)
        LOGGER.debug("Released %s", path)
        return True

    def remove_all(self) -> int:
        """Delete every lock file under the logs root and return the count."""

        if not self.root.is_dir():
            return 0
        removed = 0
        for path in self.root.glob(f"*{LOCK_SUFFIX}"):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        return removed

    # ------------------------------------------------------------------ io
    @staticmethod
    def _load(path: Path) -> ActiveSession | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError):
            return None
        except OSError as error:
            LOGGER.debug("Unable to read lock %s: %s", path, error)
            return None
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                return None
            return ActiveSession.model_validate({**payload, "lock_path": str(path)})
        except (json.JSONDecodeError, ValidationError):
            return None

    @staticmethod
    def _write(path: Path, data: LockData) -> None:
        LockRegistry._commit(LockRegistry._stage(path, data), path)

    @staticmethod
    def _stage(path: Path, data: LockData) -> str:
        """Write ``data`` to a synced temp file next to ``path``."""

        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(_serialise(data))
                handle.flush()
                os.fsync(handle.fileno())
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
        return tmp

    @staticmethod
    def _commit(tmp: str, path: Path) -> None:
        try:
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise


def default_session_name(project_path: Path) -> str:
    stamp = utc_now().strftime("%Y%m%dT%H%M%S")
    name = sanitize_for_filename(project_path.name) or "project"
    return f"rr-{name}-{stamp}"


def _same_owner(current: LockData, session: LockData) -> bool:
    return current.pid == session.pid and current.session_name == session.session_name


def _same_file_state(
    moved: LockData | None,
    tombstone: Path,
    expected: LockData | None,
    stamp: int,
) -> bool:
    if expected is None:
        if moved is not None:
            return False
        try:
            return tombstone.stat().st_mtime_ns == stamp
        except FileNotFoundError:
            return False
    return moved is not None and _same_owner(moved, expected) and moved.started_at == expected.started_at


def _restore(tombstone: Path, path: Path) -> None:
    # A hard link never replaces a lock created since the rename.
    try:
        os.link(tombstone, path)
    except FileExistsError:
        LOGGER.warning("Lock %s was recreated during reclaim; dropping %s", path, tombstone)
    except OSError:
        if not path.exists():
            os.replace(tombstone, path)
            return
    tombstone.unlink(missing_ok=True)


def _serialise(data: LockData) -> str:
    return json.dumps(data.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
