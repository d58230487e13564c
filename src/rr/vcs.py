"""Git queries used to scope reviews and to key session locks by branch."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence


class GitError(RuntimeError):
    """Raised when git is unavailable or a required git query fails."""


@dataclass(slots=True, frozen=True)
class GitOutput:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_git(cwd: Path | str, args: Sequence[str]) -> GitOutput:
    """Run ``git args`` in ``cwd`` and decode its output leniently."""

    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            check=False,
        )
    except OSError as error:
        raise GitError(f"Unable to run git: {error}") from error
    return GitOutput(
        returncode=completed.returncode,
        stdout=(completed.stdout or b"").decode("utf-8", errors="replace"),
        stderr=(completed.stderr or b"").decode("utf-8", errors="replace"),
    )


class GitRepository:
    """Read-only view of the repository a review session runs in."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Return the work tree containing ``start`` (defaults to the cwd)."""

        origin = Path(start).resolve() if start else Path.cwd()
        output = run_git(origin, ["rev-parse", "--show-toplevel"])
        top_level = output.stdout.strip()
        if not output.ok or not top_level:
            raise GitError(f"{origin} is not inside a git work tree")
        return cls(top_level)

    def _optional(self, *args: str) -> str | None:
        output = run_git(self.root, args)
        value = output.stdout.strip()
        return value if output.ok and value else None

    def current_branch(self) -> str | None:
        """Branch checked out in the work tree; ``None`` on a detached HEAD."""

        return self._optional("symbolic-ref", "--quiet", "--short", "HEAD")

    def merge_base(self, branch: str) -> str | None:
        return self._optional("merge-base", "HEAD", branch)

    def branch_exists(self, branch: str) -> bool:
        return self._optional("rev-parse", "--verify", "--quiet", branch) is not None

    def changed_paths(self) -> List[str]:
        """Paths with staged, unstaged or untracked changes."""

        listing = run_git(self.root, ["status", "--porcelain", "-z", "--untracked-files=all"])
        if not listing.ok:
            raise GitError(f"git status failed: {listing.stderr.strip() or listing.returncode}")
        paths: List[str] = []
        records = iter(listing.stdout.split("\0"))
        for record in records:
            if len(record) < 4:
                continue
            paths.append(record[3:])
            # Renames and copies carry the source path as an extra record.
            if record[0] in "RC":
                next(records, None)
        return paths

    def has_uncommitted_changes(self) -> bool:
        return bool(self.changed_paths())


__all__ = ["GitError", "GitOutput", "GitRepository", "run_git"]
