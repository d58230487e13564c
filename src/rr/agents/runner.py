"""Spawn agent CLIs, stream their output, and normalise the outcome."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from ..config import AgentRole, AgentSettings
from .registry import AgentDescriptor, AgentRegistry, ReviewOptions
from .stream import StreamCapture, StreamCaptureError, TextSink

__all__ = [
    "AgentInvocation",
    "AgentResult",
    "AgentRunner",
    "ERROR_EXIT_CODE",
    "INTERRUPTED_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "combine_output",
]

LOGGER = logging.getLogger(__name__)

ERROR_EXIT_CODE = 1
TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130

# Time allowed for pipes to drain and the child to be reaped after a kill.
KILL_GRACE_SECONDS = 2.0


@dataclass(slots=True, frozen=True)
class AgentInvocation:
    """Everything needed to launch one agent process."""

    role: AgentRole
    agent: str
    prompt: str
    timeout_ms: int
    model: Optional[str] = None
    provider: Optional[str] = None
    reasoning: Optional[str] = None
    options: Optional[ReviewOptions] = None
    cwd: Optional[Path] = None
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        role: AgentRole,
        settings: AgentSettings,
        prompt: str,
        timeout_ms: int,
        *,
        options: Optional[ReviewOptions] = None,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "AgentInvocation":
        return cls(
            role=role,
            agent=settings.agent,
            prompt=prompt,
            timeout_ms=timeout_ms,
            model=settings.model,
            provider=settings.provider,
            reasoning=settings.reasoning,
            options=options,
            cwd=cwd,
            env=dict(env or {}),
        )


@dataclass(slots=True)
class AgentResult:
    """Normalised outcome of a single agent invocation.

    ``output`` holds stdout followed by a ``[stderr]`` block when stderr was
    non-empty; ``extracted`` is the agent's final answer as recovered by the
    descriptor's ``extract_result`` from stdout, when available.
    """

    success: bool
    exit_code: int
    output: str
    duration_ms: int
    timed_out: bool = False
    interrupted: bool = False
    extracted: Optional[str] = None


def combine_output(stdout: str, stderr: str) -> str:
    if stderr:
        return f"{stdout}\n[stderr]\n{stderr}"
    return stdout


def _append_marker(output: str, marker: str) -> str:
    return f"{output}\n{marker}" if output else marker


class AgentRunner:
    """Run agents from an explicit registry.

    The runner writes live output to ``stdout_sink`` / ``stderr_sink`` (``None``
    keeps the run silent) and persists nothing itself.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        stdout_sink: TextSink | None = None,
        stderr_sink: TextSink | None = None,
        cwd: Path | str | None = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.registry = registry
        self.stdout_sink = stdout_sink
        self.stderr_sink = stderr_sink
        self.cwd = Path(cwd) if cwd is not None else None
        self.env: Dict[str, str] = dict(env or {})

    async def run(
        self,
        role: AgentRole,
        settings: AgentSettings,
        prompt: str,
        timeout_ms: int,
        options: Optional[ReviewOptions] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> AgentResult:
        invocation = AgentInvocation.from_settings(
            role,
            settings,
            prompt,
            timeout_ms,
            options=options,
            cwd=self.cwd,
            env=self.env,
        )
        return await self.execute(invocation, stop_event=stop_event)

    def run_sync(
        self,
        role: AgentRole,
        settings: AgentSettings,
        prompt: str,
        timeout_ms: int,
        options: Optional[ReviewOptions] = None,
    ) -> AgentResult:
        """Blocking wrapper around :meth:`run` for callers without a loop."""
        return asyncio.run(self.run(role, settings, prompt, timeout_ms, options))

    async def execute(
        self,
        invocation: AgentInvocation,
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> AgentResult:
        started = time.monotonic()
        descriptor = self.registry.get(invocation.agent)
        if descriptor is None:
            return self._failure(started, f"Unknown agent: {invocation.agent}")

        try:
            args = descriptor.build_args(
                invocation.role,
                invocation.prompt,
                invocation.model,
                invocation.options,
                invocation.provider,
                invocation.reasoning,
            )
            env = dict(descriptor.build_env(invocation.reasoning))
        except (TypeError, ValueError, KeyError) as error:
            return self._failure(started, f"Could not build {invocation.agent} command: {error}")
        env.update(invocation.env)

        LOGGER.debug("Spawning %s for %s", descriptor.command, invocation.role.value)
        try:
            process = await asyncio.create_subprocess_exec(
                descriptor.command,
                *args,
                cwd=str(invocation.cwd) if invocation.cwd else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as error:
            return self._failure(started, f"Failed to start {descriptor.command}: {error}")

        stdout_capture = StreamCapture(self.stdout_sink, descriptor.format_line)
        stderr_capture = StreamCapture(self.stderr_sink)
        completion = asyncio.ensure_future(self._drain(process, stdout_capture, stderr_capture))

        waiters: set[asyncio.Future] = {completion}
        stop_task: Optional[asyncio.Task] = None
        if stop_event is not None:
            stop_task = asyncio.ensure_future(stop_event.wait())
            waiters.add(stop_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=invocation.timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._abort(process, completion, stop_task)
            raise

        if completion in done:
            await self._cancel(stop_task)
            returncode, errors = completion.result()
            return self._finalise(
                descriptor, started, returncode, errors, stdout_capture, stderr_capture
            )

        interrupted = stop_task is not None and stop_task in done
        await self._abort(process, completion, stop_task)
        stdout = stdout_capture.finish()
        output = combine_output(stdout, stderr_capture.finish())
        if interrupted:
            LOGGER.info("Stopped %s on request", descriptor.command)
            marker = "[Interrupted]"
            exit_code = INTERRUPTED_EXIT_CODE
        else:
            LOGGER.warning("%s timed out after %dms", descriptor.command, invocation.timeout_ms)
            marker = f"[Timeout after {invocation.timeout_ms}ms]"
            exit_code = TIMEOUT_EXIT_CODE
        return AgentResult(
            success=False,
            exit_code=exit_code,
            output=_append_marker(output, marker),
            duration_ms=_elapsed_ms(started),
            timed_out=not interrupted,
            interrupted=interrupted,
            extracted=_extract(descriptor, stdout),
        )

    # ----------------------------------------------------------------- helpers
    @staticmethod
    async def _drain(
        process: asyncio.subprocess.Process,
        stdout_capture: StreamCapture,
        stderr_capture: StreamCapture,
    ) -> Tuple[int, List[StreamCaptureError]]:
        results = await asyncio.gather(
            stdout_capture.consume(process.stdout),
            stderr_capture.consume(process.stderr),
            return_exceptions=True,
        )
        errors: List[StreamCaptureError] = []
        for result in results:
            if isinstance(result, StreamCaptureError):
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
        returncode = await process.wait()
        return returncode, errors

    def _finalise(
        self,
        descriptor: AgentDescriptor,
        started: float,
        returncode: int,
        errors: List[StreamCaptureError],
        stdout_capture: StreamCapture,
        stderr_capture: StreamCapture,
    ) -> AgentResult:
        stdout = stdout_capture.text
        output = combine_output(stdout, stderr_capture.text)
        exit_code = returncode
        if errors:
            exit_code = ERROR_EXIT_CODE
            for error in errors:
                output = _append_marker(output, f"[Error: {error}]")
        return AgentResult(
            success=exit_code == 0 and not errors,
            exit_code=exit_code,
            output=output,
            duration_ms=_elapsed_ms(started),
            extracted=_extract(descriptor, stdout),
        )

    async def _abort(
        self,
        process: asyncio.subprocess.Process,
        completion: asyncio.Future,
        stop_task: Optional[asyncio.Task],
    ) -> None:
        await self._kill(process)
        await self._cancel(stop_task)
        if not completion.done():
            await asyncio.wait({completion}, timeout=KILL_GRACE_SECONDS)
        await self._cancel(completion)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        killpg = getattr(os, "killpg", None)
        try:
            if killpg is not None:
                killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        except PermissionError:
            process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            LOGGER.warning("Agent process %s did not exit after SIGKILL", process.pid)

    @staticmethod
    async def _cancel(future: Optional[asyncio.Future]) -> None:
        if future is None:
            return
        if not future.done():
            future.cancel()
        await asyncio.gather(future, return_exceptions=True)

    @staticmethod
    def _failure(started: float, message: str) -> AgentResult:
        LOGGER.error(message)
        return AgentResult(
            success=False,
            exit_code=ERROR_EXIT_CODE,
            output=f"[Error: {message}]",
            duration_ms=_elapsed_ms(started),
        )


def _extract(descriptor: AgentDescriptor, stdout: str) -> Optional[str]:
    if descriptor.extract_result is None or not stdout.strip():
        return None
    return descriptor.extract_result(stdout)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
