from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import ScriptedAgent, emit, finding, fix_output, make_config, review_output, sleeper
from rr.agents import AgentRunner, ReviewOptions
from rr.config import AgentRole, RetryConfig
from rr.engine import ReviewEngine, SessionState, calculate_retry_delay, format_agent_failure_warning
from rr.lockfile import LockRegistry, SessionAlreadyRunningError
from rr.vcs import GitRepository


def _engine(config, project: Path, logs_root: Path, agent: ScriptedAgent, **kwargs) -> ReviewEngine:
    runner = AgentRunner({"fake": agent.descriptor()}, cwd=project)
    return ReviewEngine(
        config,
        project,
        runner=runner,
        logs_root=logs_root,
        handle_signals=False,
        stop_poll_interval=0.05,
        notify=lambda message: None,
        **kwargs,
    )


def _entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_clean_review_completes_after_one_iteration(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, emit(review_output([])))
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.COMPLETED
    assert result.success
    assert result.iterations == 1
    entries = _entries(result.log_path)
    assert [entry["type"] for entry in entries] == ["system", "iteration", "session_end"]
    assert entries[0]["project_path"] == str(project_dir.resolve())
    assert entries[1]["review"]["findings"] == []
    assert "fixes" not in entries[1]
    assert entries[2]["status"] == "completed"
    assert scripted_agent.prompts_for(AgentRole.FIXER) == []
    assert list(logs_root.glob("*.lock")) == []


def test_fixer_no_changes_needed_ends_session(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(
        AgentRole.REVIEWER,
        emit(review_output([finding()])),
        emit(review_output([finding("Second issue")])),
    )
    scripted_agent.queue(
        AgentRole.FIXER,
        emit(fix_output("APPLY_MOST")),
        emit(fix_output("NO_CHANGES_NEEDED", fixed=0)),
    )
    engine = _engine(make_config(max_iterations=5), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.COMPLETED
    assert result.iterations == 2
    iterations = [entry for entry in _entries(result.log_path) if entry["type"] == "iteration"]
    assert [entry["iteration"] for entry in iterations] == [1, 2]
    assert iterations[0]["fixes"]["decision"] == "APPLY_MOST"
    assert iterations[1]["fixes"]["decision"] == "NO_CHANGES_NEEDED"

    fixer_prompt = scripted_agent.prompts_for(AgentRole.FIXER)[0]
    assert "Null check missing" in fixer_prompt


def test_max_iterations_records_exactly_that_many_iterations(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    for _ in range(2):
        scripted_agent.queue(AgentRole.REVIEWER, emit(review_output([finding()])))
        scripted_agent.queue(AgentRole.FIXER, emit(fix_output("APPLY_SELECTIVELY")))
    engine = _engine(make_config(max_iterations=2), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.MAX_ITERATIONS
    assert result.iterations == 2
    entries = _entries(result.log_path)
    assert sum(1 for entry in entries if entry["type"] == "iteration") == 2
    assert entries[-1]["status"] == "max_iterations"
    assert entries[-1]["iterations"] == 2


def test_missing_payload_is_retried_once_with_reminder(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(
        AgentRole.REVIEWER,
        emit("I reviewed it and it looks fine."),
        emit(review_output([])),
    )
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.COMPLETED
    prompts = scripted_agent.prompts_for(AgentRole.REVIEWER)
    assert len(prompts) == 2
    assert "IMPORTANT" not in prompts[0]
    assert prompts[1].startswith(prompts[0])
    assert "missing or invalid structured JSON output" in prompts[1]


def test_payload_missing_after_retry_fails_the_session(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, emit(review_output([finding()])))
    scripted_agent.queue(AgentRole.FIXER, emit("edited things"), emit("still no summary"))
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.FAILED
    entries = _entries(result.log_path)
    iteration = next(entry for entry in entries if entry["type"] == "iteration")
    assert iteration["error"]["phase"] == "fixer"
    assert iteration["review"]["findings"][0]["title"] == "Null check missing"
    assert "Do not make additional file edits" in scripted_agent.prompts_for(AgentRole.FIXER)[1]
    assert entries[-1]["status"] == "failed"


def test_failed_agent_process_is_retried(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, emit("boom", exit_code=2), emit(review_output([])))
    config = make_config(retry={"max_retries": 2, "base_delay_ms": 0, "max_delay_ms": 0})
    engine = _engine(config, project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.COMPLETED
    assert len(scripted_agent.prompts_for(AgentRole.REVIEWER)) == 2


def test_exhausted_retries_fail_with_exit_code(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, emit("boom", exit_code=2), emit("boom", exit_code=2))
    config = make_config(retry={"max_retries": 1, "base_delay_ms": 0, "max_delay_ms": 0})
    engine = _engine(config, project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.FAILED
    iteration = next(entry for entry in _entries(result.log_path) if entry["type"] == "iteration")
    assert iteration["error"] == {
        "phase": "reviewer",
        "message": "reviewer failed with exit code 2 after 1 retries",
        "exit_code": 2,
    }


def test_simplifier_failure_is_recorded_on_session_end(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.CODE_SIMPLIFIER, emit("", exit_code=5))
    engine = _engine(make_config(run={"simplifier": True}), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.FAILED
    assert result.iterations == 0
    end = _entries(result.log_path)[-1]
    assert end["type"] == "session_end"
    assert end["error"]["phase"] == "code-simplifier"
    assert scripted_agent.prompts_for(AgentRole.REVIEWER) == []


def test_simplifier_runs_before_first_review(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.CODE_SIMPLIFIER, emit("simplified"))
    scripted_agent.queue(AgentRole.REVIEWER, emit(review_output([])))
    engine = _engine(make_config(run={"simplifier": True}), project_dir, logs_root, scripted_agent)

    result = engine.run_sync()

    assert result.state is SessionState.COMPLETED
    assert [role for role, _ in scripted_agent.calls] == [AgentRole.CODE_SIMPLIFIER, AgentRole.REVIEWER]


def test_stop_request_interrupts_running_agent_and_releases_lock(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, sleeper(30, before="thinking"))
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)

    async def scenario():
        asyncio.get_running_loop().call_later(0.3, engine.request_stop)
        return await engine.run()

    result = asyncio.run(scenario())

    assert result.state is SessionState.INTERRUPTED
    entries = _entries(result.log_path)
    iteration = next(entry for entry in entries if entry["type"] == "iteration")
    assert iteration["error"]["exit_code"] == 130
    assert entries[-1]["status"] == "interrupted"
    assert list(logs_root.glob("*.lock")) == []


def test_stopping_state_in_lock_interrupts_session(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    scripted_agent.queue(AgentRole.REVIEWER, sleeper(30))
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)
    registry = LockRegistry(logs_root)

    async def scenario():
        def stop_from_outside() -> None:
            session = registry.read(project_dir)
            assert session is not None
            registry.request_stop(session)

        asyncio.get_running_loop().call_later(0.3, stop_from_outside)
        return await engine.run()

    result = asyncio.run(scenario())

    assert result.state is SessionState.INTERRUPTED
    assert registry.read(project_dir) is None


def test_live_session_conflict_raises(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    LockRegistry(logs_root).acquire(project_dir, None, "rr-other")
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)

    with pytest.raises(SessionAlreadyRunningError):
        engine.run_sync()

    assert scripted_agent.calls == []


def test_branch_sessions_do_not_conflict(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    LockRegistry(logs_root).acquire(project_dir, "main", "rr-main")
    scripted_agent.queue(AgentRole.REVIEWER, emit(review_output([])))
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent, branch="feature/x")

    result = engine.run_sync()

    assert result.state is SessionState.COMPLETED
    assert result.log_path.name.endswith("_feature-x.jsonl")
    assert len(list(logs_root.glob("*.lock"))) == 1


def test_retry_delay_grows_and_is_capped() -> None:
    retry = RetryConfig(max_retries=5, base_delay_ms=100, max_delay_ms=1000)

    assert calculate_retry_delay(0, retry, rng=lambda: 0.0) == 100
    assert calculate_retry_delay(2, retry, rng=lambda: 0.0) == 400
    assert calculate_retry_delay(1, retry, rng=lambda: 1.0) == 300
    assert calculate_retry_delay(6, retry, rng=lambda: 0.5) == 1000


def test_failure_warning_names_role_and_exit_code() -> None:
    warning = format_agent_failure_warning(AgentRole.FIXER, 137, 3)

    assert "FIXER AGENT FAILED - EXIT CODE 137" in warning
    assert "Retries exhausted: 3/3" in warning
    assert "BROKEN" in warning


def test_git_failure_while_building_review_prompt_fails_the_iteration(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent
) -> None:
    engine = _engine(
        make_config(),
        project_dir,
        logs_root,
        scripted_agent,
        repo=GitRepository(project_dir / "gone"),
        review_options=ReviewOptions(base_branch="main"),
    )

    result = engine.run_sync()

    assert result.state is SessionState.FAILED
    assert engine.state is SessionState.FAILED
    entries = _entries(result.log_path)
    assert [entry["type"] for entry in entries] == ["system", "iteration", "session_end"]
    assert entries[1]["error"]["phase"] == "reviewer"
    assert "GitError" in entries[1]["error"]["message"]
    assert entries[2]["status"] == "failed"
    assert entries[2]["error"]["phase"] == "reviewer"
    assert scripted_agent.calls == []
    assert list(logs_root.glob("*.lock")) == []


def test_error_outside_a_phase_still_ends_the_session(
    project_dir: Path, logs_root: Path, scripted_agent: ScriptedAgent, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine = _engine(make_config(), project_dir, logs_root, scripted_agent)

    async def broken_cycle():
        raise RuntimeError("disk vanished")

    monkeypatch.setattr(engine, "_run_cycle", broken_cycle)

    result = engine.run_sync()

    assert result.state is SessionState.FAILED
    assert result.reason == "Unexpected error: disk vanished"
    end = _entries(result.log_path)[-1]
    assert end["type"] == "session_end"
    assert end["status"] == "failed"
    assert list(logs_root.glob("*.lock")) == []
