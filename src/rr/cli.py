"""CLI commands for running and supervising review -> fix sessions."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer

from .agents import AgentRunner, ReviewOptions, default_registry
from .config import (
    Config,
    ConfigError,
    copy_config_template,
    default_config_path,
    default_logs_root,
    load_config,
    save_config,
    validate_agents,
)
from .engine import ReviewEngine, SessionState
from .lockfile import ActiveSession, LockError, LockRegistry, SessionAlreadyRunningError
from .logs import (
    IterationEntry,
    SessionEndEntry,
    SystemEntry,
    derive_status,
    latest_project_session,
    list_project_sessions,
    list_sessions as list_session_logs,
    read_log,
)
from .vcs import GitError, GitRepository

APP_HELP = "Run an unattended review -> fix loop with external coding agents."

app = typer.Typer(help=APP_HELP)

EXIT_CODES = {
    SessionState.COMPLETED: 0,
    SessionState.MAX_ITERATIONS: 0,
    SessionState.FAILED: 1,
    SessionState.INTERRUPTED: 130,
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config_path(config: Optional[str]) -> Path:
    return Path(config) if config else default_config_path()


def _load(config: Optional[str]) -> Config:
    try:
        return validate_agents(load_config(_config_path(config)), default_registry())
    except ConfigError as error:
        typer.echo(str(error))
        typer.echo("Run `rr init` to create a configuration file.")
        raise typer.Exit(code=1) from error


def _logs_root(logs_dir: Optional[str]) -> Path:
    return Path(logs_dir) if logs_dir else default_logs_root()


def _discover_repo(project: Path) -> Optional[GitRepository]:
    try:
        return GitRepository.discover(project)
    except GitError:
        return None


def _describe(session: ActiveSession) -> str:
    branch = session.branch or "default"
    progress = f"iteration {session.iteration}" if session.iteration else "starting"
    state = session.state or "unknown"
    return f"{session.session_name}  pid={session.pid}  {session.project_path} [{branch}]  {state}, {progress}"


@app.command()
def init(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file (defaults to the user config directory).",
    ),
    reviewer: Optional[str] = typer.Option(None, "--reviewer", help="Agent used for reviews."),
    fixer: Optional[str] = typer.Option(None, "--fixer", help="Agent used for fixes."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration."),
) -> None:
    """Write the default configuration file."""

    config_path = _config_path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    data = copy_config_template()
    known = default_registry()
    for role, agent in (("reviewer", reviewer), ("fixer", fixer)):
        if agent is None:
            continue
        if agent not in known:
            typer.echo(f"Unknown agent '{agent}'. Choose from: {', '.join(sorted(known))}")
            raise typer.Exit(code=1)
        data[role] = {"agent": agent}

    try:
        written = save_config(data, config_path)
    except (ConfigError, OSError) as error:
        typer.echo(f"Failed to write config: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Wrote configuration to {written}")

    missing = sorted({data["reviewer"]["agent"], data["fixer"]["agent"]} - {
        name for name, descriptor in known.items() if descriptor.is_available()
    })
    for agent in missing:
        typer.echo(f"Warning: '{agent}' was not found on PATH.")


@app.command()
def run(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file."),
    project: str = typer.Option(".", "--project", "-p", help="Project directory to review."),
    logs_dir: Optional[str] = typer.Option(None, "--logs-dir", help="Override the logs directory."),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", "-n", min=1, help="Override max_iterations from the config."
    ),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Review changes against this base branch."),
    commit: Optional[str] = typer.Option(None, "--commit", help="Review the changes of a single commit."),
    uncommitted: bool = typer.Option(False, "--uncommitted", help="Review uncommitted changes."),
    custom: Optional[str] = typer.Option(None, "--custom", help="Custom review instructions."),
    simplifier: Optional[bool] = typer.Option(
        None, "--simplifier/--no-simplifier", help="Run the code simplifier before the first review."
    ),
) -> None:
    """Run the review -> fix loop for a project."""

    selected = [flag for flag in (base, commit, custom) if flag] + (["uncommitted"] if uncommitted else [])
    if len(selected) > 1:
        typer.echo("Choose only one of --base, --commit, --custom or --uncommitted.")
        raise typer.Exit(code=1)

    cfg = _load(config)
    updates = {}
    if max_iterations is not None:
        updates["max_iterations"] = max_iterations
    if simplifier is not None:
        updates["run"] = cfg.run.model_copy(update={"simplifier": simplifier})
    if updates:
        cfg = cfg.model_copy(update=updates)

    if not selected and cfg.default_review.type == "base":
        base = cfg.default_review.branch
    options = ReviewOptions(base_branch=base, commit_sha=commit, custom_instructions=custom)

    project_path = Path(project).resolve()
    repo = _discover_repo(project_path)
    branch = repo.current_branch() if repo else None
    if repo is not None and base and not repo.branch_exists(base):
        typer.echo(f"Base branch '{base}' does not exist in {repo.root}.")
        raise typer.Exit(code=1)
    if repo is not None and not (base or commit or custom):
        try:
            dirty = repo.has_uncommitted_changes()
        except GitError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
        if not dirty:
            typer.echo("No uncommitted changes to review.")
            raise typer.Exit(code=0)

    runner = AgentRunner(
        default_registry(),
        stdout_sink=sys.stdout,
        stderr_sink=sys.stderr,
        cwd=project_path,
    )
    engine = ReviewEngine(
        cfg,
        project_path,
        runner=runner,
        logs_root=_logs_root(logs_dir),
        branch=branch,
        review_options=options,
        repo=repo,
        notify=typer.echo,
    )
    try:
        result = asyncio.run(engine.run())
    except SessionAlreadyRunningError as error:
        typer.echo(str(error))
        typer.echo("Use `rr status` to inspect it or `rr stop` to end it.")
        raise typer.Exit(code=1) from error
    except LockError as error:
        typer.echo(f"Unable to lock the session: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(f"Session finished: {result.state.value} after {result.iterations} iteration(s).")
    if result.log_path is not None:
        typer.echo(f"Log: {result.log_path}")
    raise typer.Exit(code=EXIT_CODES[result.state])


@app.command()
def status(
    project: str = typer.Option(".", "--project", "-p", help="Project directory."),
    logs_dir: Optional[str] = typer.Option(None, "--logs-dir", help="Override the logs directory."),
) -> None:
    """Show running sessions and the latest outcome for a project."""

    root = _logs_root(logs_dir)
    project_path = Path(project).resolve()
    sessions = [item for item in LockRegistry(root).list_active() if Path(item.project_path) == project_path]
    if sessions:
        typer.echo("Running:")
        for session in sessions:
            typer.echo(f"- {_describe(session)}")
    else:
        typer.echo(f"No running session for {project_path}.")

    latest = latest_project_session(root, project_path)
    if latest is None:
        return
    entries = read_log(latest.path)
    iterations = sum(1 for entry in entries if isinstance(entry, IterationEntry))
    typer.echo(f"Latest log: {latest.path}")
    typer.echo(f"Status: {derive_status(entries)} ({iterations} iteration(s))")


@app.command("list")
def list_sessions(
    logs_dir: Optional[str] = typer.Option(None, "--logs-dir", help="Override the logs directory."),
) -> None:
    """List every running session on this machine."""

    sessions = LockRegistry(_logs_root(logs_dir)).list_active()
    if not sessions:
        typer.echo("No running sessions.")
        return
    for session in sessions:
        typer.echo(_describe(session))


@app.command()
def stop(
    project: str = typer.Option(".", "--project", "-p", help="Project directory."),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch of the session to stop."),
    all_sessions: bool = typer.Option(False, "--all", help="Stop every session and remove all locks."),
    logs_dir: Optional[str] = typer.Option(None, "--logs-dir", help="Override the logs directory."),
) -> None:
    """Ask a running session to stop."""

    registry = LockRegistry(_logs_root(logs_dir))
    if all_sessions:
        sessions = registry.list_active()
        for session in sessions:
            registry.request_stop(session)
            typer.echo(f"Stopping {_describe(session)}")
        removed = registry.remove_all()
        typer.echo(f"Removed {removed} lock file(s).")
        return

    project_path = Path(project).resolve()
    if branch is None:
        repo = _discover_repo(project_path)
        branch = repo.current_branch() if repo else None
    session = registry.read(project_path, branch)
    if session is None:
        typer.echo(f"No running session for {project_path}.")
        raise typer.Exit(code=1)
    if registry.is_stale(session):
        registry.cleanup_stale(session)
        typer.echo(f"Removed stale lock left by pid {session.pid}.")
        return
    registry.request_stop(session)
    typer.echo(f"Stop requested for {_describe(session)}")


@app.command()
def logs(
    project: str = typer.Option(".", "--project", "-p", help="Project directory."),
    logs_dir: Optional[str] = typer.Option(None, "--logs-dir", help="Override the logs directory."),
    list_all: bool = typer.Option(False, "--list", "-l", help="List session logs instead of showing one."),
    path: Optional[str] = typer.Option(None, "--path", help="Show a specific log file."),
    all_projects: bool = typer.Option(False, "--all-projects", help="With --list, include every project."),
) -> None:
    """Summarise the latest session log for a project."""

    root = _logs_root(logs_dir)
    project_path = Path(project).resolve()
    if list_all:
        if all_projects:
            sessions = list_session_logs(root)
        else:
            sessions = list_project_sessions(root, project_path)
        if not sessions:
            typer.echo("No session logs found.")
            return
        for item in sessions:
            label = f"{item.project_name}/{item.name}" if all_projects else item.name
            typer.echo(f"{label}  {derive_status(read_log(item.path))}")
        return

    if path:
        log_path = Path(path)
    else:
        latest = latest_project_session(root, project_path)
        if latest is None:
            typer.echo("No session logs found.")
            raise typer.Exit(code=1)
        log_path = latest.path

    for line in _render_log(log_path):
        typer.echo(line)


def _render_log(log_path: Path) -> List[str]:
    lines = [f"Log: {log_path}"]
    for entry in read_log(log_path):
        if isinstance(entry, SystemEntry):
            branch = entry.git_branch or "default"
            lines.append(
                f"Started {entry.timestamp:%Y-%m-%d %H:%M:%S} on {entry.project_path} [{branch}] "
                f"reviewer={entry.reviewer.agent} fixer={entry.fixer.agent}"
            )
        elif isinstance(entry, IterationEntry):
            parts = [f"Iteration {entry.iteration}:"]
            if entry.review is not None:
                parts.append(f"{len(entry.review.findings)} finding(s)")
            if entry.fixes is not None:
                parts.append(
                    f"{entry.fixes.decision}, {len(entry.fixes.fixes)} fixed, {len(entry.fixes.skipped)} skipped"
                )
            if entry.error is not None:
                parts.append(f"error in {entry.error.phase}: {entry.error.message}")
            lines.append(" ".join(parts))
        elif isinstance(entry, SessionEndEntry):
            lines.append(f"Ended: {entry.status} - {entry.reason}")
    return lines


if __name__ == "__main__":
    app()
