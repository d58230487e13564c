"""Review -> fix iteration engine.

One engine drives one session: it takes the (project, branch) lock, alternates
reviewer and fixer runs, records every iteration in the session log and always
ends in a terminal state with the lock released.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import signal
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .agents import AgentRunner, default_registry
from .agents.registry import ReviewOptions
from .agents.runner import AgentResult
from .config import AgentRole, Config, RetryConfig, default_logs_root
from .lockfile import ActiveSession, LockRegistry
from .logs import (
    IterationEntry,
    IterationError,
    SessionEndEntry,
    SystemEntry,
    append_entry,
    create_log_session,
)
from .prompts import build_fixer_prompt, build_reviewer_prompt, build_simplifier_prompt
from .structured import FixSummary, ReviewSummary, StructuredPayload, build_retry_prompt, extract_from_output
from .vcs import GitRepository

__all__ = [
    "CycleResult",
    "PhaseError",
    "ReviewEngine",
    "SessionState",
    "calculate_retry_delay",
    "format_agent_failure_warning",
]

LOGGER = logging.getLogger(__name__)

STOP_POLL_SECONDS = 1.0


class SessionState(str, Enum):
    STARTING = "starting"
    REVIEWING = "reviewing"
    FIXING = "fixing"
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.MAX_ITERATIONS,
        SessionState.FAILED,
        SessionState.INTERRUPTED,
    }
)


class PhaseError(RuntimeError):
    """Fatal failure of one phase (simplifier, reviewer or fixer)."""

    def __init__(self, phase: str, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.phase = phase
        self.message = message
        self.exit_code = exit_code

    def to_log(self) -> IterationError:
        return IterationError(phase=self.phase, message=self.message, exit_code=self.exit_code)


def _as_phase_error(role: AgentRole, error: Exception) -> PhaseError:
    if isinstance(error, PhaseError):
        return error
    LOGGER.exception("Unexpected error during %s phase", role.value)
    return PhaseError(role.value, f"Unexpected error during {role.value}: {type(error).__name__}: {error}")


class _Interrupted(Exception):
    def __init__(self, phase: str) -> None:
        super().__init__(phase)
        self.phase = phase


@dataclass(slots=True)
class CycleResult:
    """Outcome of a whole session."""

    state: SessionState
    iterations: int
    reason: str
    log_path: Optional[Path] = None
    session_name: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state is SessionState.COMPLETED


def calculate_retry_delay(
    attempt: int,
    retry: RetryConfig,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Backoff delay in milliseconds for the zero-based retry ``attempt``.

    ``min(max_delay, base * 2**attempt + uniform(0, base * 2**attempt / 2))``
    """
    exponential = retry.base_delay_ms * (2**attempt)
    jitter = rng() * (exponential / 2)
    return min(exponential + jitter, retry.max_delay_ms)


def format_agent_failure_warning(role: AgentRole, exit_code: int, retries: int) -> str:
    """Return a boxed warning shown when an agent keeps failing."""
    border = "=" * 60
    lines = [
        f"+{border}+",
        f"|  {role.value.upper()} AGENT FAILED - EXIT CODE {exit_code}",
        "|",
        f"|  Retries exhausted: {retries}/{retries}",
        "|",
        "|  WARNING: Code may be in a BROKEN state!",
        f"|  The {role.value} may have been interrupted mid-execution.",
        "|  Check git diff, run the tests and verify the build.",
        f"+{border}+",
    ]
    return "\n".join(lines)


class ReviewEngine:
    """Drive one review -> fix session for a project.

    ``request_stop`` (or SIGINT/SIGTERM when ``handle_signals`` is set, or a
    ``stopping`` state written into the lock file by another process) ends the
    session in ``INTERRUPTED`` after terminating the running agent.
    """

    def __init__(
        self,
        config: Config,
        project_path: Path | str,
        *,
        runner: Optional[AgentRunner] = None,
        locks: Optional[LockRegistry] = None,
        logs_root: Path | str | None = None,
        branch: Optional[str] = None,
        review_options: Optional[ReviewOptions] = None,
        repo: Optional[GitRepository] = None,
        session_name: Optional[str] = None,
        handle_signals: bool = True,
        stop_poll_interval: float = STOP_POLL_SECONDS,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config
        self.project_path = Path(project_path).resolve()
        self.logs_root = Path(logs_root) if logs_root is not None else default_logs_root()
        self.locks = locks or LockRegistry(self.logs_root)
        self.runner = runner or AgentRunner(
            default_registry(),
            stdout_sink=sys.stdout,
            stderr_sink=sys.stderr,
            cwd=self.project_path,
        )
        self.branch = branch
        self.review_options = review_options
        self.repo = repo
        self.session_name = session_name
        self.handle_signals = handle_signals
        self.stop_poll_interval = stop_poll_interval
        self.notify = notify or LOGGER.info

        self.state = SessionState.STARTING
        self.session: Optional[ActiveSession] = None
        self.log_path: Optional[Path] = None
        self.iterations = 0
        self._stop_event = asyncio.Event()
        self._signals: List[int] = []

    # ------------------------------------------------------------------ public
    def request_stop(self) -> None:
        """Ask the session to stop; the running agent is terminated."""
        if not self._stop_event.is_set():
            LOGGER.info("Stop requested for %s", self.project_path)
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run_sync(self) -> CycleResult:
        return asyncio.run(self.run())

    async def run(self) -> CycleResult:
        """Run the session to a terminal state.

        Raises :class:`~rr.lockfile.SessionAlreadyRunningError` when another
        live session holds the lock; that conflict is never retried.
        """
        session = self.locks.acquire(self.project_path, self.branch, self.session_name)
        self.session = session
        try:
            state, reason = await self._run_session(session)
        except Exception as error:
            LOGGER.exception("Session for %s failed unexpectedly", self.project_path)
            state, reason = SessionState.FAILED, f"Unexpected error: {error}"
            self.state = state
            self._append_end_quietly(state, reason)
        finally:
            self.locks.release(session)

        self.notify(reason)
        return CycleResult(
            state=state,
            iterations=self.iterations,
            reason=reason,
            log_path=self.log_path,
            session_name=session.session_name,
        )

    async def _run_session(self, session: ActiveSession) -> tuple[SessionState, str]:
        self.log_path = create_log_session(self.logs_root, self.project_path, session.branch)
        self.session = self.locks.update(session, log_path=str(self.log_path)) or session
        append_entry(self.log_path, self._system_entry())

        self._install_signal_handlers()
        watcher = asyncio.ensure_future(self._watch_lock())
        try:
            state, reason, error = await self._run_cycle()
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            self._remove_signal_handlers()

        self.state = state
        append_entry(
            self.log_path,
            SessionEndEntry(status=state.value, reason=reason, iterations=self.iterations, error=error),
        )
        return state, reason

    # ------------------------------------------------------------------- cycle
    async def _run_cycle(self) -> tuple[SessionState, str, Optional[IterationError]]:
        max_iterations = self.config.max_iterations
        try:
            if self.config.run.simplifier:
                await self._run_simplifier()
        except _Interrupted:
            return SessionState.INTERRUPTED, "Session interrupted during code simplification", None
        except Exception as error:
            failure = _as_phase_error(AgentRole.CODE_SIMPLIFIER, error)
            return SessionState.FAILED, failure.message, failure.to_log()

        while self.iterations < max_iterations:
            if self.stop_requested:
                return SessionState.INTERRUPTED, "Session interrupted by stop request", None

            iteration = self.iterations + 1
            self.notify(f"Iteration {iteration}/{max_iterations}")
            started = time.monotonic()
            review: Optional[ReviewSummary] = None
            fixes: Optional[FixSummary] = None
            phase = AgentRole.REVIEWER
            try:
                self._set_state(SessionState.REVIEWING, iteration)
                review = await self._run_structured(
                    AgentRole.REVIEWER,
                    build_reviewer_prompt(self.review_options, self.repo),
                )
                if not review.findings:
                    self._record(iteration, started, review=review)
                    return SessionState.COMPLETED, "No issues found - code is clean", None

                phase = AgentRole.FIXER
                self._set_state(SessionState.FIXING, iteration)
                fixes = await self._run_structured(AgentRole.FIXER, build_fixer_prompt(review))
            except _Interrupted as interrupted:
                error = IterationError(phase=interrupted.phase, message="Interrupted by stop request", exit_code=130)
                self._record(iteration, started, review=review, error=error)
                return SessionState.INTERRUPTED, "Session interrupted by stop request", None
            except Exception as error:
                failure = _as_phase_error(phase, error)
                self._record(iteration, started, review=review, error=failure.to_log())
                return SessionState.FAILED, failure.message, failure.to_log()

            self._record(iteration, started, review=review, fixes=fixes)
            if fixes.decision == "NO_CHANGES_NEEDED":
                return SessionState.COMPLETED, "Fixer verified there is nothing left to change", None

        return (
            SessionState.MAX_ITERATIONS,
            f"Max iterations ({max_iterations}) reached - some issues may remain",
            None,
        )

    async def _run_simplifier(self) -> None:
        self.notify("Running code simplifier")
        result = await self._run_with_retry(
            AgentRole.CODE_SIMPLIFIER,
            build_simplifier_prompt(self.review_options, self.repo),
        )
        LOGGER.debug("Code simplifier finished in %dms", result.duration_ms)

    async def _run_structured(self, role: AgentRole, prompt: str) -> StructuredPayload:
        """Run ``role`` and return its payload, re-prompting once when missing."""
        result = await self._run_with_retry(role, prompt)
        payload = extract_from_output(role, result.output, result.extracted)
        if payload is not None:
            return payload

        LOGGER.warning("%s returned no valid structured output; retrying once", role.value)
        self.notify(f"{role.value} output was missing its JSON summary, asking again")
        result = await self._run_with_retry(role, f"{prompt}\n\n{build_retry_prompt(role)}")
        payload = extract_from_output(role, result.output, result.extracted)
        if payload is None:
            raise PhaseError(
                role.value,
                f"{role.value} did not return valid structured output after a retry",
                result.exit_code,
            )
        return payload

    async def _run_with_retry(self, role: AgentRole, prompt: str) -> AgentResult:
        """Invoke ``role``, retrying failed processes with exponential backoff."""
        retry = self.config.retry
        result = await self._invoke(role, prompt)
        for attempt in range(1, retry.max_retries + 1):
            if result.success:
                return result
            if result.interrupted or self.stop_requested:
                raise _Interrupted(role.value)
            delay_ms = calculate_retry_delay(attempt - 1, retry)
            LOGGER.warning(
                "%s failed with exit code %s; retry %d/%d in %.1fs",
                role.value,
                result.exit_code,
                attempt,
                retry.max_retries,
                delay_ms / 1000,
            )
            await self._sleep_unless_stopped(delay_ms / 1000, role)
            result = await self._invoke(role, prompt)

        if result.interrupted or (not result.success and self.stop_requested):
            raise _Interrupted(role.value)
        if not result.success:
            self.notify(format_agent_failure_warning(role, result.exit_code, retry.max_retries))
            raise PhaseError(
                role.value,
                f"{role.value} failed with exit code {result.exit_code} after {retry.max_retries} retries",
                result.exit_code,
            )
        return result

    async def _invoke(self, role: AgentRole, prompt: str) -> AgentResult:
        if self.stop_requested:
            raise _Interrupted(role.value)
        return await self.runner.run(
            role,
            self.config.settings_for(role),
            prompt,
            self.config.iteration_timeout_ms,
            options=self.review_options,
            stop_event=self._stop_event,
        )

    async def _sleep_unless_stopped(self, seconds: float, role: AgentRole) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise _Interrupted(role.value)

    # -------------------------------------------------------------- recording
    def _system_entry(self) -> SystemEntry:
        options = dataclasses.asdict(self.review_options) if self.review_options else None
        return SystemEntry(
            project_path=str(self.project_path),
            git_branch=self.session.branch if self.session else None,
            reviewer=self.config.reviewer,
            fixer=self.config.fixer,
            code_simplifier=self.config.code_simplifier,
            max_iterations=self.config.max_iterations,
            review_options=options,
        )

    def _record(
        self,
        iteration: int,
        started: float,
        *,
        review: Optional[ReviewSummary] = None,
        fixes: Optional[FixSummary] = None,
        error: Optional[IterationError] = None,
    ) -> None:
        assert self.log_path is not None
        entry = IterationEntry(
            iteration=iteration,
            duration_ms=int((time.monotonic() - started) * 1000),
            review=review,
            fixes=fixes,
            error=error,
        )
        append_entry(self.log_path, entry)
        self.iterations = iteration

    def _append_end_quietly(self, state: SessionState, reason: str) -> None:
        if self.log_path is None:
            return
        try:
            append_entry(
                self.log_path,
                SessionEndEntry(status=state.value, reason=reason, iterations=self.iterations),
            )
        except OSError as error:
            LOGGER.warning("Unable to record session end in %s: %s", self.log_path, error)

    def _set_state(self, state: SessionState, iteration: int) -> None:
        self.state = state
        LOGGER.debug("Session %s entering %s (iteration %d)", self.project_path, state.value, iteration)
        if self.session is None:
            return
        try:
            updated = self.locks.update(self.session, state=state.value, iteration=iteration)
        except OSError as error:
            LOGGER.warning("Unable to update lock progress: %s", error)
            return
        if updated is not None:
            self.session = updated

    # ------------------------------------------------------------ stop inputs
    async def _watch_lock(self) -> None:
        """Turn a ``stopping`` lock state or a lost lock into a stop request."""
        while not self.stop_requested:
            await asyncio.sleep(self.stop_poll_interval)
            if self.session is None:
                continue
            current = self.locks.reload(self.session)
            if current is None or current.pid != self.session.pid:
                LOGGER.warning("Session lock %s disappeared; stopping", self.session.lock_path)
                self.request_stop()
            elif current.stop_requested:
                self.notify("Stop requested from another process")
                self.request_stop()

    def _install_signal_handlers(self) -> None:
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError, ValueError):
                LOGGER.debug("Signal handler for %s unavailable", signum)
                continue
            self._signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            loop.remove_signal_handler(signum)
        self._signals.clear()

    def _on_signal(self, signum: int) -> None:
        self.notify(f"Received {signal.Signals(signum).name}, stopping after terminating the running agent")
        self.request_stop()
