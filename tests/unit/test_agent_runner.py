from __future__ import annotations

import asyncio
import io
import json
import sys
from pathlib import Path

import pytest

from conftest import ScriptedAgent, emit, sleeper
from rr.agents import AgentRunner
from rr.agents import claude
from rr.agents.registry import AgentDescriptor
from rr.agents import runner as runner_module
from rr.agents.runner import combine_output
from rr.agents.stream import StreamCapture
from rr.config import AgentRole, AgentSettings

FAKE = AgentSettings(agent="fake")


def _runner(agent: ScriptedAgent, **kwargs) -> AgentRunner:
    return AgentRunner({"fake": agent.descriptor()}, **kwargs)


def test_successful_run_captures_stdout(scripted_agent: ScriptedAgent) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, emit("hello from agent"))
    sink = io.StringIO()

    result = _runner(scripted_agent, stdout_sink=sink).run_sync(AgentRole.REVIEWER, FAKE, "prompt", 20_000)

    assert result.success
    assert result.exit_code == 0
    assert result.output == "hello from agent"
    assert sink.getvalue() == "hello from agent"
    assert not result.timed_out
    assert scripted_agent.calls == [(AgentRole.REVIEWER, "prompt")]


def test_stderr_is_appended_as_a_block(scripted_agent: ScriptedAgent) -> None:
    scripted_agent.queue(AgentRole.FIXER, emit("out", exit_code=4, stderr="bad things"))

    result = _runner(scripted_agent).run_sync(AgentRole.FIXER, FAKE, "prompt", 20_000)

    assert not result.success
    assert result.exit_code == 4
    assert result.output == "out\n[stderr]\nbad things"


def test_combine_output_without_stderr() -> None:
    assert combine_output("only stdout", "") == "only stdout"


def test_timeout_kills_agent_and_reports_124(scripted_agent: ScriptedAgent) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, sleeper(30, before="partial"))

    result = _runner(scripted_agent).run_sync(AgentRole.REVIEWER, FAKE, "prompt", 50)

    assert not result.success
    assert result.timed_out
    assert result.exit_code == 124
    assert result.output.endswith("[Timeout after 50ms]")
    assert result.duration_ms < 10_000


def test_unknown_agent_reports_error_without_spawning(scripted_agent: ScriptedAgent) -> None:
    result = _runner(scripted_agent).run_sync(
        AgentRole.REVIEWER, AgentSettings(agent="nope"), "prompt", 1000
    )

    assert result.exit_code == 1
    assert result.output == "[Error: Unknown agent: nope]"
    assert scripted_agent.calls == []


def test_missing_binary_is_reported_as_error() -> None:
    descriptor = AgentDescriptor(
        command="/nonexistent/rr-agent-binary",
        build_args=lambda role, prompt, model, options, provider, reasoning: [prompt],
    )
    runner = AgentRunner({"ghost": descriptor})

    result = runner.run_sync(AgentRole.REVIEWER, AgentSettings(agent="ghost"), "prompt", 1000)

    assert not result.success
    assert result.exit_code == 1
    assert result.output.startswith("[Error: Failed to start /nonexistent/rr-agent-binary")


def test_stop_event_interrupts_agent(scripted_agent: ScriptedAgent) -> None:
    scripted_agent.queue(AgentRole.FIXER, sleeper(30, before="working"))
    runner = _runner(scripted_agent)

    async def scenario():
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, stop.set)
        return await runner.run(AgentRole.FIXER, FAKE, "prompt", 20_000, stop_event=stop)

    result = asyncio.run(scenario())

    assert result.interrupted
    assert not result.timed_out
    assert result.exit_code == 130
    assert result.output.endswith("[Interrupted]")


def test_agent_runs_in_configured_directory(scripted_agent: ScriptedAgent, tmp_path: Path) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, "import os, sys\nsys.stdout.write(os.getcwd())")

    result = _runner(scripted_agent, cwd=tmp_path).run_sync(AgentRole.REVIEWER, FAKE, "prompt", 20_000)

    assert Path(result.output).resolve() == tmp_path.resolve()


def test_jsonl_agent_is_formatted_live_and_extracted() -> None:
    events = [
        {"type": "system", "subtype": "init"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Checking files"}]}},
        {"type": "result", "result": "final answer"},
    ]
    payload = "".join(json.dumps(event) + "\n" for event in events)
    script = f"import sys\nsys.stdout.write({payload!r})"
    descriptor = AgentDescriptor(
        command=sys.executable,
        build_args=lambda role, prompt, model, options, provider, reasoning: ["-c", script],
        format_line=claude.format_line,
        extract_result=claude.extract_result,
    )
    sink = io.StringIO()
    runner = AgentRunner({"claude-like": descriptor}, stdout_sink=sink)

    result = runner.run_sync(AgentRole.REVIEWER, AgentSettings(agent="claude-like"), "prompt", 20_000)

    assert result.success
    assert result.output == payload
    assert result.extracted == "final answer"
    rendered = sink.getvalue()
    assert "Checking files\n\n" in rendered
    assert "=== Result ===\nfinal answer" in rendered
    assert "subtype" not in rendered


class _BrokenPipe:
    def __init__(self, inner: asyncio.StreamReader) -> None:
        self._inner = inner
        self._reads = 0

    async def read(self, size: int = -1) -> bytes:
        self._reads += 1
        if self._reads == 1:
            return await self._inner.read(size)
        raise OSError("pipe broke")


class _BrokenCapture(StreamCapture):
    async def consume(self, stream):
        return await super().consume(_BrokenPipe(stream) if stream is not None else None)


def test_stream_failure_reports_error_exit(
    scripted_agent: ScriptedAgent, monkeypatch: pytest.MonkeyPatch
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, emit("partial output"))
    monkeypatch.setattr(runner_module, "StreamCapture", _BrokenCapture)

    result = _runner(scripted_agent).run_sync(AgentRole.REVIEWER, FAKE, "prompt", 20_000)

    assert not result.success
    assert result.exit_code == 1
    assert "[Error: Stream read failed: pipe broke]" in result.output
