from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from storyloop import prompts
from storyloop.actionability import VagueTermLexicon, check_actionability
from storyloop.backends.base import AgentBackend, AgentInvocationError
from storyloop.config import StoryloopConfig
from storyloop.errors import (
    CancellationError,
    CorruptStateError,
    GenerationError,
    GitError,
    IterationCeilingError,
    LoadError,
    LockTimeoutError,
    RetryExhaustedError,
    StoryloopError,
)
from storyloop.events import (
    ErrorEvent,
    EventStream,
    FailureReason,
    PlanningStarted,
    PlanReady,
    PlanSummary,
    RunCompleted,
    RunFailed,
    StoryFinished,
    StorySnapshot,
    StoryStarted,
    WarningEvent,
)
from storyloop.git import BranchManager, story_commit_message
from storyloop.plan import Plan, Story
from storyloop.state.plan_store import PlanStore

SOURCE_EXTENSIONS = frozenset(
    {
        ".go", ".py", ".js", ".ts", ".jsx", ".tsx", ".rb", ".java", ".rs", ".c",
        ".cpp", ".cs", ".php", ".swift", ".kt", ".ex", ".hs", ".scala", ".sh",
        ".ml", ".r", ".pl", ".lua", ".dart", ".vue", ".svelte", ".html", ".css",
        ".scss",
    }
)
SKIPPED_DIRECTORIES = frozenset({"node_modules", "vendor", "__pycache__"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def is_empty_codebase(work_dir: Path) -> bool:
    """True when no source file exists below ``work_dir``."""
    if not work_dir.is_dir():
        return True
    for _root, dirs, files in os.walk(work_dir):
        dirs[:] = [
            name for name in dirs if not name.startswith(".") and name not in SKIPPED_DIRECTORIES
        ]
        for name in files:
            if Path(name).suffix.lower() in SOURCE_EXTENSIONS:
                return False
    return True


@dataclass(slots=True)
class RunSummary:
    project_name: str
    iterations: int
    total_stories: int
    completed_stories: int
    started_at: str
    ended_at: str


class Engine:
    """Drives plan generation and the story loop, publishing progress as events."""

    def __init__(
        self,
        config: StoryloopConfig,
        backend: AgentBackend,
        store: PlanStore,
        events: EventStream,
        branch_manager: BranchManager | None = None,
        lexicon: VagueTermLexicon | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.store = store
        self.events = events
        self.branch_manager = branch_manager
        self.lexicon = lexicon or VagueTermLexicon.from_words(
            config.actionability.vague_verbs, config.actionability.vague_adjectives
        )
        self.cancel_event = cancel_event or asyncio.Event()

    @property
    def plan_file(self) -> str:
        return self.store.path.name

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        logger.debug("Cancellation requested")
        self.cancel_event.set()

    async def _fail(
        self,
        reason: FailureReason,
        message: str,
        failed: list[StorySnapshot] | None = None,
        iterations: int = 0,
    ) -> None:
        await self.events.publish(
            RunFailed(
                reason=reason,
                message=message,
                failed_stories=tuple(failed or ()),
                iterations=iterations,
            )
        )

    async def _invoke(self, prompt: str) -> None:
        await self.backend.invoke(prompt, self.events.publish_line, self.cancel_event)

    # Generation

    async def _invoke_for_plan(self, prompt: str, purpose: str) -> None:
        try:
            await self._invoke(prompt)
        except AgentInvocationError as exc:
            if self.cancelled:
                raise CancellationError(f"{purpose} cancelled") from exc
            logger.error("{} failed with model {}: {}", purpose, self.config.agent.model, exc)
            raise GenerationError(
                f"{purpose} failed with model {self.config.agent.model}: {exc}"
            ) from exc
        if self.cancelled:
            raise CancellationError(f"{purpose} cancelled")

    async def _load_generated(self) -> Plan:
        if not await asyncio.to_thread(self.store.exists):
            raise GenerationError(
                f"agent completed but did not write {self.plan_file}; "
                "it may not have understood the request"
            )
        try:
            plan = await asyncio.to_thread(self.store.load)
            plan.validate_generated()
        except (CorruptStateError, LockTimeoutError) as exc:
            raise GenerationError(f"generated plan {self.plan_file} is unusable: {exc}") from exc
        return plan

    async def _generate(self, prompt: str) -> Plan:
        work_dir = self.config.work_dir
        new_project = await asyncio.to_thread(is_empty_codebase, work_dir)
        if new_project:
            logger.info("No source files in {}; planning a new project", work_dir)
            await self.events.publish(
                WarningEvent(
                    "Working directory appears to have no source code. "
                    "The plan will be generated for a new project."
                )
            )
        if await asyncio.to_thread(self.store.exists):
            await self.events.publish(
                WarningEvent(f"Existing {self.plan_file} will be replaced by the new plan.")
            )

        await self._invoke_for_plan(
            prompts.plan_generation(prompt, self.plan_file, new_project=new_project),
            "plan generation",
        )
        plan = await self._load_generated()

        findings = check_actionability(plan, self.lexicon)
        if findings:
            listing = "\n".join(f"  {finding.describe()}" for finding in findings)
            await self.events.publish(
                WarningEvent(
                    f"Plan has {len(findings)} unmeasurable sentence(s); requesting a refinement:\n"
                    f"{listing}"
                )
            )
            await self._invoke_for_plan(
                prompts.plan_refinement(plan.to_json(), self.plan_file, findings),
                "plan refinement",
            )
            plan = await self._load_generated()
            findings = check_actionability(plan, self.lexicon)
            if findings:
                raise GenerationError(
                    f"plan is still not actionable after refinement "
                    f"({len(findings)} vague sentence(s))",
                    findings=findings,
                )

        try:
            await asyncio.to_thread(self.store.save, plan)
        except (StoryloopError, OSError) as exc:
            raise GenerationError(f"failed to save generated plan: {exc}") from exc
        return plan

    async def generate(self, prompt: str) -> Plan:
        logger.debug("Generating plan, prompt_length={}", len(prompt))
        await self.events.publish(PlanningStarted())
        try:
            plan = await self._generate(prompt)
        except CancellationError as exc:
            await self._fail(FailureReason.CANCELLED, str(exc))
            raise
        except GenerationError as exc:
            await self._fail(FailureReason.GENERATION, str(exc))
            raise
        logger.debug("Plan generated: project={} stories={}", plan.project_name, len(plan.stories))
        await self.events.publish(PlanReady(summary=PlanSummary.of(plan)))
        return plan

    async def load(self) -> Plan:
        try:
            plan = await asyncio.to_thread(self.store.load)
        except (CorruptStateError, LockTimeoutError) as exc:
            message = f"failed to load plan {self.plan_file}: {exc}"
            await self._fail(FailureReason.LOAD, message)
            raise LoadError(message) from exc
        logger.debug("Plan loaded: project={} stories={}", plan.project_name, len(plan.stories))
        await self.events.publish(PlanReady(summary=PlanSummary.of(plan), loaded=True))
        return plan

    # Story loop

    async def _checkout(self, plan: Plan) -> None:
        if self.branch_manager is None or not plan.branch_name:
            return
        try:
            await asyncio.to_thread(self.branch_manager.checkout_branch, plan.branch_name)
        except GitError as exc:
            logger.warning("Branch checkout failed: {}", exc)
            await self.events.publish(ErrorEvent(f"Could not check out {plan.branch_name}: {exc}"))

    async def _commit(self, story: Story) -> None:
        if self.branch_manager is None:
            return
        message = story_commit_message(story.id, story.title, story.description)
        try:
            committed = await asyncio.to_thread(self.branch_manager.commit, message)
        except GitError as exc:
            logger.warning("Commit for story {} failed: {}", story.id, exc)
            await self.events.publish(ErrorEvent(f"Could not commit story {story.id}: {exc}"))
            return
        if committed:
            logger.debug("Committed story {}", story.id)

    async def _save(self, plan: Plan) -> None:
        await asyncio.to_thread(self.store.save, plan)

    async def _reload(self, story_id: str) -> tuple[Plan, Story]:
        try:
            plan = await asyncio.to_thread(self.store.load)
        except CorruptStateError as exc:
            raise CorruptStateError(
                f"failed to reload {self.plan_file} after story {story_id}: {exc}",
                path=exc.path,
            ) from exc
        story = plan.get_story(story_id)
        if story is None:
            raise CorruptStateError(
                f"story {story_id} disappeared from {self.plan_file}", path=self.store.path
            )
        return plan, story

    async def _run_story(self, plan: Plan, story: Story, iteration: int) -> Plan:
        snapshot = StorySnapshot.of(story)
        logger.debug(
            "Starting story {} iteration={} retry_count={}", story.id, iteration, story.retry_count
        )
        await self.events.publish(StoryStarted(story=snapshot, iteration=iteration))

        invocation_error: AgentInvocationError | None = None
        try:
            await self._invoke(
                prompts.story_implementation(story, plan, self.plan_file, iteration)
            )
        except AgentInvocationError as exc:
            invocation_error = exc
            logger.debug("Agent invocation for story {} failed: {}", story.id, exc)

        known_version = plan.version
        reloaded, updated = await self._reload(story.id)
        if reloaded.version > known_version + 1:
            logger.warning(
                "Plan version jumped from {} to {} during story {}",
                known_version,
                reloaded.version,
                story.id,
            )
            await self.events.publish(
                WarningEvent(
                    f"{self.plan_file} was modified externally "
                    f"(version {known_version} -> {reloaded.version})"
                )
            )
        elif reloaded.version < known_version:
            reloaded.version = known_version

        if self.cancelled and invocation_error is not None:
            # Interrupted attempts are not charged against the story.
            await self.events.publish(
                StoryFinished(story=StorySnapshot.of(updated), success=False, error="cancelled")
            )
            return reloaded

        success = updated.passes and invocation_error is None
        if invocation_error is not None or not updated.passes:
            updated.retry_count = max(updated.retry_count, story.retry_count + 1)
            await self._save(reloaded)
        else:
            await self._commit(updated)

        error = None
        if invocation_error is not None:
            error = str(invocation_error)
        elif not updated.passes:
            error = "story not marked as passing"
        await self.events.publish(
            StoryFinished(story=StorySnapshot.of(updated), success=success, error=error)
        )
        return reloaded

    async def _loop(self, plan: Plan) -> tuple[int, Plan]:
        retry_limit = self.config.run.retry_limit
        max_iterations = self.config.run.max_iterations
        iteration = 0
        while True:
            if self.cancelled:
                raise CancellationError(f"run cancelled after {iteration} iteration(s)")

            if plan.all_completed():
                await asyncio.to_thread(self.store.delete)
                logger.info("All {} stories completed", len(plan.stories))
                await self.events.publish(RunCompleted(iterations=iteration))
                return iteration, plan

            story = plan.next_pending_story(retry_limit)
            if story is None:
                failed = [StorySnapshot.of(item) for item in plan.failed_stories(retry_limit)]
                raise RetryExhaustedError(
                    f"all remaining stories have failed ({len(failed)} stories)",
                    failed_stories=failed,
                    iterations=iteration,
                )

            iteration += 1
            if iteration > max_iterations:
                failed = [StorySnapshot.of(item) for item in plan.failed_stories(retry_limit)]
                raise IterationCeilingError(
                    f"max iterations ({max_iterations}) reached",
                    failed_stories=failed,
                    iterations=iteration - 1,
                )

            plan = await self._run_story(plan, story, iteration)

    async def run(self, plan: Plan) -> RunSummary:
        started_at = _utcnow_iso()
        logger.debug(
            "Starting implementation: project={} branch={} stories={} completed={}",
            plan.project_name,
            plan.branch_name,
            len(plan.stories),
            plan.completed_count(),
        )
        await self._checkout(plan)
        try:
            await self._save(plan)
            iterations, final_plan = await self._loop(plan)
        except CancellationError as exc:
            await self._fail(FailureReason.CANCELLED, str(exc))
            raise
        except RetryExhaustedError as exc:
            await self._fail(
                FailureReason.RETRIES_EXHAUSTED, str(exc), exc.failed_stories, exc.iterations
            )
            raise
        except IterationCeilingError as exc:
            await self._fail(
                FailureReason.ITERATION_CEILING, str(exc), exc.failed_stories, exc.iterations
            )
            raise
        except LockTimeoutError as exc:
            await self._fail(FailureReason.LOCK_TIMEOUT, str(exc))
            raise
        except CorruptStateError as exc:
            await self._fail(FailureReason.CORRUPT_STATE, str(exc))
            raise
        return RunSummary(
            project_name=final_plan.project_name,
            iterations=iterations,
            total_stories=len(final_plan.stories),
            completed_stories=final_plan.completed_count(),
            started_at=started_at,
            ended_at=_utcnow_iso(),
        )
