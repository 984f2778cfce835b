import asyncio
import errno
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from storyloop.backends.base import (
    AgentBackend,
    AgentInvocationError,
    InvocationCancelledError,
)
from storyloop.backends.opencode import OpenCodeBackend
from storyloop.config import StoryloopConfig
from storyloop.engine import Engine, is_empty_codebase
from storyloop.errors import (
    CancellationError,
    CorruptStateError,
    GenerationError,
    GitError,
    IterationCeilingError,
    LoadError,
    PlanStorageError,
    RetryExhaustedError,
    StoryloopError,
)
from storyloop.events import (
    ErrorEvent,
    EventStream,
    FailureReason,
    OutputLineEvent,
    PlanningStarted,
    PlanReady,
    RunCompleted,
    RunFailed,
    RunStatus,
    StoryFinished,
    StoryStarted,
    WarningEvent,
)
from storyloop.git import BranchManager
from storyloop.state import FilePlanStore, plan_store
from storyloop.streaming import OutputLine

Step = Callable[[], None]


class ScriptedAgent(AgentBackend):
    """Stands in for the coding agent: each invocation runs the next scripted step."""

    name = "scripted"

    def __init__(self, steps: list[Step] | None = None) -> None:
        self.steps = list(steps or [])
        self.prompts: list[str] = []

    async def invoke(self, prompt, sink, cancel_event=None) -> None:
        self.prompts.append(prompt)
        await sink(OutputLine(text=f"invocation {len(self.prompts)}"))
        if self.steps:
            self.steps.pop(0)()


class RecordingBranchManager(BranchManager):
    def __init__(self, fail_checkout: bool = False) -> None:
        self.fail_checkout = fail_checkout
        self.checkouts: list[str] = []
        self.commits: list[str] = []

    def checkout_branch(self, name: str) -> None:
        if self.fail_checkout:
            raise GitError("checkout", "not a git repository")
        self.checkouts.append(name)

    def commit(self, message: str) -> bool:
        self.commits.append(message)
        return True


def _story(story_id: str, priority: int = 1, **extra: Any) -> dict[str, Any]:
    payload = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": f"Build {story_id}",
        "acceptance_criteria": [f"{story_id} endpoint returns 200"],
        "priority": priority,
        "passes": False,
    }
    payload.update(extra)
    return payload


def _document(*stories: dict[str, Any], **extra: Any) -> dict[str, Any]:
    payload = {"project_name": "demo", "branch_name": "feature/demo", "stories": list(stories)}
    payload.update(extra)
    return payload


def _write(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


def _edit(path: Path, story_id: str, **changes: Any) -> Step:
    def step() -> None:
        payload = json.loads(path.read_text(encoding="utf-8"))
        for key, value in changes.items():
            if key.startswith("plan_"):
                payload[key.removeprefix("plan_")] = value
        story_changes = {
            key: value for key, value in changes.items() if not key.startswith("plan_")
        }
        for story in payload["stories"]:
            if story["id"] == story_id:
                story.update(story_changes)
        _write(path, payload)

    return step


def _fail(message: str = "agent crashed") -> Step:
    def step() -> None:
        raise AgentInvocationError(message, backend="scripted", exit_code=1)

    return step


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        agent: ScriptedAgent,
        *,
        max_iterations: int = 50,
        retry_limit: int = 3,
        branch_manager: BranchManager | None = None,
    ) -> None:
        self.config = StoryloopConfig.default()
        self.config.work_dir = tmp_path
        self.config.run.max_iterations = max_iterations
        self.config.run.retry_limit = retry_limit
        self.store = FilePlanStore(self.config.plan_path)
        self.agent = agent
        self.engine = Engine(
            config=self.config,
            backend=agent,
            store=self.store,
            events=EventStream(capacity=4),
            branch_manager=branch_manager,
        )
        self.events: list[Any] = []
        self.error: StoryloopError | None = None
        self.status: RunStatus | None = None

    @property
    def plan_path(self) -> Path:
        return self.config.plan_path

    def drive(self, operation: Callable[[Engine], Any]) -> Any:
        async def _run() -> Any:
            consumer = asyncio.create_task(self.engine.events.drain(self.events.append))
            result = None
            try:
                result = await operation(self.engine)
            except StoryloopError as exc:
                self.error = exc
            finally:
                await self.engine.events.close()
            self.status = await consumer
            return result

        return asyncio.run(_run())

    def resume(self) -> Any:
        async def _load_and_run(engine: Engine) -> Any:
            plan = await engine.load()
            return await engine.run(plan)

        return self.drive(_load_and_run)

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events if not isinstance(event, OutputLineEvent)]

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


def test_two_stories_complete_in_priority_order(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("B", priority=2), _story("A", priority=1)))
    harness.agent.steps = [_edit(path, "A", passes=True), _edit(path, "B", passes=True)]

    summary = harness.resume()

    assert harness.error is None
    assert harness.status is RunStatus.COMPLETED
    assert summary.iterations == 2
    assert harness.kinds() == [
        "plan_ready",
        "story_started",
        "story_finished",
        "story_started",
        "story_finished",
        "run_completed",
    ]
    started = harness.of_type(StoryStarted)
    finished = harness.of_type(StoryFinished)
    assert [event.story.id for event in started] == ["A", "B"]
    assert [(event.story.id, event.success) for event in finished] == [("A", True), ("B", True)]
    assert harness.of_type(RunCompleted)[0].iterations == 2
    assert not path.exists()


def test_output_lines_arrive_before_story_finishes(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("A")))
    harness.agent.steps = [_edit(path, "A", passes=True)]

    harness.resume()

    kinds = [event.kind for event in harness.events]
    assert kinds.index("output_line") < kinds.index("story_finished")
    assert harness.of_type(OutputLineEvent)[0].line.text == "invocation 1"


def test_story_that_never_passes_exhausts_retries(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), retry_limit=1)
    _write(harness.plan_path, _document(_story("A")))

    harness.resume()

    assert isinstance(harness.error, RetryExhaustedError)
    assert harness.status is RunStatus.FAILED
    assert len(harness.agent.prompts) == 1
    failure = harness.of_type(RunFailed)[0]
    assert failure.reason is FailureReason.RETRIES_EXHAUSTED
    assert [(story.id, story.retry_count) for story in failure.failed_stories] == [("A", 1)]
    assert harness.store.load().stories[0].retry_count == 1


def test_zero_iteration_ceiling_never_invokes_agent(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), max_iterations=0)
    _write(harness.plan_path, _document(_story("A")))

    harness.resume()

    assert isinstance(harness.error, IterationCeilingError)
    assert harness.agent.prompts == []
    assert harness.of_type(RunFailed)[0].reason is FailureReason.ITERATION_CEILING
    assert harness.of_type(StoryStarted) == []


def test_failed_invocation_counts_as_retry_even_if_agent_reset_counter(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), retry_limit=2)
    path = harness.plan_path
    _write(path, _document(_story("A", retry_count=0)))

    def crash_after_resetting() -> None:
        _edit(path, "A", retry_count=0)()
        raise AgentInvocationError("exit 1", backend="scripted", exit_code=1)

    harness.agent.steps = [crash_after_resetting, _fail()]

    harness.resume()

    finished = harness.of_type(StoryFinished)
    assert [event.success for event in finished] == [False, False]
    assert [event.story.retry_count for event in finished] == [1, 2]
    assert "exit 1" in (finished[0].error or "")
    assert isinstance(harness.error, RetryExhaustedError)


def test_agent_raising_retry_count_is_respected(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), retry_limit=5)
    path = harness.plan_path
    _write(path, _document(_story("A")))
    harness.agent.steps = [_edit(path, "A", retry_count=4), _edit(path, "A", passes=True)]

    harness.resume()

    finished = harness.of_type(StoryFinished)
    assert finished[0].story.retry_count == 4
    assert finished[1].success is True
    assert harness.status is RunStatus.COMPLETED


def test_passing_story_with_failed_invocation_is_not_a_success(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), retry_limit=3)
    path = harness.plan_path
    _write(path, _document(_story("A")))

    def pass_then_crash() -> None:
        _edit(path, "A", passes=True)()
        raise AgentInvocationError("exit 2", backend="scripted", exit_code=2)

    harness.agent.steps = [pass_then_crash]

    harness.resume()

    finished = harness.of_type(StoryFinished)
    assert finished[0].success is False
    assert finished[0].story.retry_count == 1
    assert harness.status is RunStatus.COMPLETED


def test_version_jump_publishes_warning_and_keeps_reloaded_content(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("A"), _story("B", priority=2), version=3))
    harness.agent.steps = [
        _edit(path, "A", passes=True, plan_version=9, plan_context="edited elsewhere"),
        _edit(path, "B", passes=True),
    ]

    harness.resume()

    warnings = [event.message for event in harness.of_type(WarningEvent)]
    assert any("version 4 -> 9" in message for message in warnings)
    assert harness.status is RunStatus.COMPLETED
    assert "edited elsewhere" in harness.agent.prompts[1]


def test_lower_reloaded_version_is_carried_forward(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), retry_limit=3)
    path = harness.plan_path
    _write(path, _document(_story("A"), version=7))
    harness.agent.steps = [_edit(path, "A", plan_version=1)]

    async def one_story(engine: Engine) -> None:
        plan = await engine.load()
        engine.config.run.max_iterations = 1
        await engine.run(plan)

    harness.drive(one_story)

    assert isinstance(harness.error, IterationCeilingError)
    assert harness.store.load().version == 9


def test_missing_story_after_reload_is_corrupt_state(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("A")))

    def drop_story() -> None:
        _write(path, _document(_story("Z")))

    harness.agent.steps = [drop_story]

    harness.resume()

    assert isinstance(harness.error, CorruptStateError)
    assert harness.of_type(RunFailed)[0].reason is FailureReason.CORRUPT_STATE


def test_unparseable_plan_after_story_is_corrupt_state(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("A")))
    harness.agent.steps = [lambda: path.write_text("{not json", encoding="utf-8")]

    harness.resume()

    assert isinstance(harness.error, CorruptStateError)
    assert harness.status is RunStatus.FAILED


def test_cancel_during_invocation_stops_without_charging_retry(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    _write(harness.plan_path, _document(_story("A")))

    def interrupted() -> None:
        harness.engine.cancel()
        raise InvocationCancelledError("cancelled", backend="scripted", retriable=False)

    harness.agent.steps = [interrupted]

    harness.resume()

    assert isinstance(harness.error, CancellationError)
    assert harness.status is RunStatus.CANCELLED
    assert harness.of_type(RunFailed)[0].reason is FailureReason.CANCELLED
    assert harness.store.load().stories[0].retry_count == 0
    assert len(harness.agent.prompts) == 1


def test_passing_story_is_committed_and_branch_checked_out(tmp_path: Path) -> None:
    branches = RecordingBranchManager()
    harness = Harness(tmp_path, ScriptedAgent(), branch_manager=branches)
    path = harness.plan_path
    _write(path, _document(_story("A")))
    harness.agent.steps = [_edit(path, "A", passes=True)]

    harness.resume()

    assert branches.checkouts == ["feature/demo"]
    assert branches.commits == ["feat: Story A\n\nBuild A\n\nStory: A"]


def test_checkout_failure_is_not_fatal(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path, ScriptedAgent(), branch_manager=RecordingBranchManager(fail_checkout=True)
    )
    path = harness.plan_path
    _write(path, _document(_story("A")))
    harness.agent.steps = [_edit(path, "A", passes=True)]

    harness.resume()

    assert harness.of_type(ErrorEvent)
    assert harness.status is RunStatus.COMPLETED


def test_load_without_plan_fails(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())

    harness.drive(lambda engine: engine.load())

    assert isinstance(harness.error, LoadError)
    assert harness.of_type(RunFailed)[0].reason is FailureReason.LOAD


def test_load_publishes_loaded_summary(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    _write(harness.plan_path, _document(_story("A", passes=True), _story("B")))

    harness.drive(lambda engine: engine.load())

    ready = harness.of_type(PlanReady)[0]
    assert ready.loaded is True
    assert (ready.summary.completed, ready.summary.total) == (1, 2)


def test_generate_saves_actionable_plan(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    (tmp_path / "app.py").write_text("print('hi')\n", encoding="utf-8")
    harness.agent.steps = [lambda: _write(harness.plan_path, _document(_story("A")))]

    plan = harness.drive(lambda engine: engine.generate("add a health endpoint"))

    assert harness.error is None
    assert plan.version == 1
    assert harness.store.load().version == 1
    assert harness.kinds() == ["planning_started", "plan_ready"]
    assert "add a health endpoint" in harness.agent.prompts[0]
    assert "prd.json" in harness.agent.prompts[0]


def test_generate_warns_on_empty_codebase(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    harness.agent.steps = [lambda: _write(harness.plan_path, _document(_story("A")))]

    harness.drive(lambda engine: engine.generate("start a new cli"))

    assert isinstance(harness.events[0], PlanningStarted)
    assert any("no source code" in event.message for event in harness.of_type(WarningEvent))
    assert "no source files yet" in harness.agent.prompts[0]


def test_generate_fails_when_agent_writes_nothing(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())

    harness.drive(lambda engine: engine.generate("anything"))

    assert isinstance(harness.error, GenerationError)
    assert harness.of_type(RunFailed)[0].reason is FailureReason.GENERATION


def test_generate_fails_when_agent_crashes(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent([_fail("model unavailable")]))

    harness.drive(lambda engine: engine.generate("anything"))

    assert isinstance(harness.error, GenerationError)
    assert "model unavailable" in str(harness.error)


def test_generate_rejects_structurally_invalid_plan(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    harness.agent.steps = [lambda: _write(harness.plan_path, _document())]

    harness.drive(lambda engine: engine.generate("anything"))

    assert isinstance(harness.error, GenerationError)
    assert "no stories" in str(harness.error)


def test_generate_refines_vague_plan_once(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    harness.agent.steps = [
        lambda: _write(path, _document(_story("A", description="Improve the search page."))),
        _edit(path, "A", description="Search returns results in under 200 ms."),
    ]

    plan = harness.drive(lambda engine: engine.generate("faster search"))

    assert harness.error is None
    assert len(harness.agent.prompts) == 2
    assert "Improve the search page." in harness.agent.prompts[1]
    assert plan.stories[0].description == "Search returns results in under 200 ms."
    assert harness.of_type(WarningEvent)


def test_generate_fails_when_refinement_stays_vague(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    harness.agent.steps = [
        lambda: _write(path, _document(_story("A", description="Improve the search page."))),
        lambda: None,
    ]

    harness.drive(lambda engine: engine.generate("faster search"))

    assert isinstance(harness.error, GenerationError)
    assert [finding.term for finding in harness.error.findings] == ["improve"]
    assert len(harness.agent.prompts) == 2


def test_generate_cancelled_reports_cancellation(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())

    def interrupted() -> None:
        harness.engine.cancel()
        raise InvocationCancelledError("cancelled", backend="scripted", retriable=False)

    harness.agent.steps = [interrupted]

    harness.drive(lambda engine: engine.generate("anything"))

    assert isinstance(harness.error, CancellationError)
    assert harness.status is RunStatus.CANCELLED


def test_is_empty_codebase_skips_hidden_and_vendor_dirs(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "hook.sh").write_text("", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "index.js").write_text("", encoding="utf-8")
    (tmp_path / "README.md").write_text("", encoding="utf-8")

    assert is_empty_codebase(tmp_path) is True

    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.go").write_text("package main\n", encoding="utf-8")
    assert is_empty_codebase(tmp_path) is False


def test_zero_retry_limit_fails_without_invoking(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent(), retry_limit=0)
    _write(harness.plan_path, _document(_story("A")))

    harness.resume()

    assert isinstance(harness.error, RetryExhaustedError)
    assert harness.agent.prompts == []


def test_agent_that_cannot_start_is_retried_then_reported(tmp_path: Path) -> None:
    binary = tmp_path / "bin" / "opencode"
    binary.parent.mkdir()
    binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    binary.chmod(0o644)
    harness = Harness(tmp_path, OpenCodeBackend(binary=str(binary)), retry_limit=2)
    _write(harness.plan_path, _document(_story("A")))

    harness.resume()

    finished = harness.of_type(StoryFinished)
    assert len(finished) == 2
    assert all("could not start opencode" in (event.error or "") for event in finished)
    failure = harness.of_type(RunFailed)[0]
    assert failure.reason is FailureReason.RETRIES_EXHAUSTED
    assert harness.kinds()[-1] == "run_failed"
    assert harness.store.load().stories[0].retry_count == 2


def test_plan_write_failure_during_run_is_reported(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    _write(harness.plan_path, _document(_story("A")))
    real_replace = os.replace
    replaced: list[Any] = []

    def replace_until_disk_fills(src: Any, dst: Any) -> None:
        replaced.append(dst)
        if len(replaced) > 1:
            raise OSError(errno.ENOSPC, "No space left on device")
        real_replace(src, dst)

    monkeypatch.setattr(plan_store.os, "replace", replace_until_disk_fills)

    harness.resume()

    assert isinstance(harness.error, PlanStorageError)
    failure = harness.of_type(RunFailed)[0]
    assert failure.reason is FailureReason.CORRUPT_STATE
    assert "No space left on device" in failure.message
    assert harness.kinds()[-1] == "run_failed"


def test_wrongly_shaped_story_after_reload_is_corrupt_state(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("A")))
    harness.agent.steps = [_edit(path, "A", acceptance_criteria=5)]

    harness.resume()

    assert isinstance(harness.error, CorruptStateError)
    assert harness.of_type(RunFailed)[0].reason is FailureReason.CORRUPT_STATE


def test_summary_reflects_stories_added_during_run(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedAgent())
    path = harness.plan_path
    _write(path, _document(_story("A")))

    def pass_and_add_story() -> None:
        _write(path, _document(_story("A", passes=True), _story("B", priority=2, passes=True)))

    harness.agent.steps = [pass_and_add_story]

    summary = harness.resume()

    assert summary.total_stories == 2
    assert summary.completed_stories == 2
    assert summary.iterations == 1
