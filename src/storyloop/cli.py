from __future__ import annotations

import asyncio
import contextlib
import signal
from dataclasses import dataclass
from pathlib import Path

import click
from loguru import logger

from storyloop.backends import build_backend
from storyloop.config import (
    CONFIG_FILE_NAME,
    SUPPORTED_MODELS,
    ConfigError,
    StoryloopConfig,
    load_config,
    save_config,
)
from storyloop.engine import Engine
from storyloop.errors import CorruptStateError, LockTimeoutError, StoryloopError
from storyloop.events import (
    ErrorEvent,
    Event,
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
from storyloop.git import GitBranchManager
from storyloop.log import configure_logging
from storyloop.plan import Plan
from storyloop.state import FilePlanStore

RESUMABLE_REASONS = frozenset(
    {
        FailureReason.CANCELLED,
        FailureReason.RETRIES_EXHAUSTED,
        FailureReason.ITERATION_CEILING,
        FailureReason.LOCK_TIMEOUT,
    }
)


@dataclass(slots=True)
class Runtime:
    work_dir: Path
    config: StoryloopConfig
    store: FilePlanStore
    events: EventStream
    engine: Engine


def _resolve_config_path(work_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = work_dir / config_path
    return config_path.resolve()


def _load(work_dir: Path, config_value: str) -> StoryloopConfig:
    try:
        return load_config(work_dir, _resolve_config_path(work_dir, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_store(config: StoryloopConfig) -> FilePlanStore:
    return FilePlanStore(
        config.plan_path,
        lock_timeout_seconds=config.store.lock_timeout_seconds,
        lock_retry_seconds=config.store.lock_retry_seconds,
    )


def _build_runtime(work_dir: Path, config: StoryloopConfig) -> Runtime:
    store = _build_store(config)
    events = EventStream(capacity=config.events.capacity)
    branch_manager = GitBranchManager(work_dir)
    if not branch_manager.is_repository():
        logger.info("{} is not a git repository; branch and commit steps are skipped", work_dir)
        branch_manager = None
    engine = Engine(
        config=config,
        backend=build_backend(config.agent.model, working_directory=work_dir),
        store=store,
        events=events,
        branch_manager=branch_manager,
    )
    return Runtime(work_dir=work_dir, config=config, store=store, events=events, engine=engine)


class LinePresenter:
    """Renders engine events as plain terminal lines."""

    def __init__(self, *, verbose: bool = False, retry_limit: int = 3) -> None:
        self.verbose = verbose
        self.retry_limit = retry_limit
        self.plan_ready = False

    def __call__(self, event: Event) -> None:
        if isinstance(event, OutputLineEvent):
            line = event.line
            if line.verbose and not self.verbose:
                return
            click.echo(f"[!] {line.text}" if line.is_error else line.text)
        elif isinstance(event, PlanningStarted):
            click.echo("Analyzing codebase and generating plan...")
        elif isinstance(event, PlanReady):
            self.plan_ready = True
            summary = event.summary
            verb = "Loaded" if event.loaded else "Generated"
            click.echo(
                f"{verb} plan: {summary.project_name} "
                f"({summary.completed}/{summary.total} stories done)"
            )
            if summary.branch_name:
                click.echo(f"Branch: {summary.branch_name}")
        elif isinstance(event, StoryStarted):
            story = event.story
            click.echo("")
            click.echo(
                f"[{event.iteration}] {story.id}: {story.title} "
                f"(attempt {story.retry_count + 1}/{self.retry_limit})"
            )
        elif isinstance(event, StoryFinished):
            if event.success:
                click.echo(f"Story {event.story.id} completed.")
            else:
                detail = f": {event.error}" if event.error else ""
                click.echo(f"[!] Story {event.story.id} not completed{detail}")
        elif isinstance(event, RunCompleted):
            click.echo(f"All stories completed in {event.iterations} iteration(s).")
        elif isinstance(event, RunFailed):
            self._render_failure(event)
        elif isinstance(event, ErrorEvent):
            click.echo(f"[!] {event.message}")
        elif isinstance(event, WarningEvent):
            click.echo(f"Warning: {event.message}")

    def _render_failure(self, event: RunFailed) -> None:
        click.echo(f"[!] Run failed ({event.reason.value}): {event.message}")
        if event.failed_stories:
            click.echo("Failed stories:")
            for story in event.failed_stories:
                click.echo(f"  - {story.id}: {story.title} ({story.retry_count} attempts)")
        if event.reason in RESUMABLE_REASONS:
            click.echo("Run 'storyloop resume' to continue from the saved plan.")


def _install_signal_handlers(engine: Engine) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(signum, engine.cancel)
            installed.append(signum)
    return installed


def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for signum in installed:
        loop.remove_signal_handler(signum)


async def _execute(
    runtime: Runtime,
    presenter: LinePresenter,
    *,
    prompt: str | None,
    dry_run: bool = False,
) -> RunStatus:
    engine = runtime.engine
    installed = _install_signal_handlers(engine)
    consumer = asyncio.create_task(runtime.events.drain(presenter))
    try:
        if prompt is not None:
            plan = await engine.generate(prompt)
        else:
            plan = await engine.load()
        if not dry_run:
            summary = await engine.run(plan)
            logger.debug(
                "Run finished: {} stories in {} iteration(s)",
                summary.completed_stories,
                summary.iterations,
            )
    except StoryloopError as exc:
        logger.debug("Run stopped: {}", exc)
    finally:
        await runtime.events.close()
        status = await consumer
        _remove_signal_handlers(installed)
    return status


def _exit_code(status: RunStatus, presenter: LinePresenter, dry_run: bool) -> int:
    if status is RunStatus.COMPLETED:
        return 0
    if dry_run and status is RunStatus.INCOMPLETE and presenter.plan_ready:
        return 0
    return 1


@click.group()
def cli() -> None:
    """Storyloop CLI."""


@cli.command("init")
@click.option("--model", type=click.Choice(SUPPORTED_MODELS), default=None)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def init_command(model: str | None, config_value: str) -> None:
    work_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(work_dir, config_value)
    config = _load(work_dir, config_value)
    if model:
        config.agent.model = model
    save_config(config_path, config)
    click.echo(f"Initialized storyloop in {work_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.agent.model}")


@cli.command("run")
@click.argument("prompt")
@click.option(
    "--dry-run", is_flag=True, default=False, help="Generate the plan without running it."
)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context, prompt: str, dry_run: bool, verbose: bool, config_value: str
) -> None:
    if not prompt.strip():
        raise click.UsageError("PROMPT cannot be empty.")
    configure_logging(verbose)
    work_dir = Path.cwd().resolve()
    runtime = _build_runtime(work_dir, _load(work_dir, config_value))
    presenter = LinePresenter(verbose=verbose, retry_limit=runtime.config.run.retry_limit)
    status = asyncio.run(_execute(runtime, presenter, prompt=prompt, dry_run=dry_run))
    if dry_run and presenter.plan_ready:
        click.echo(f"Dry run: plan written to {runtime.store.path}")
    ctx.exit(_exit_code(status, presenter, dry_run))


@cli.command("resume")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
@click.pass_context
def resume_command(ctx: click.Context, verbose: bool, config_value: str) -> None:
    configure_logging(verbose)
    work_dir = Path.cwd().resolve()
    runtime = _build_runtime(work_dir, _load(work_dir, config_value))
    presenter = LinePresenter(verbose=verbose, retry_limit=runtime.config.run.retry_limit)
    status = asyncio.run(_execute(runtime, presenter, prompt=None))
    ctx.exit(_exit_code(status, presenter, dry_run=False))


def _story_state(passes: bool, retry_count: int, retry_limit: int) -> str:
    if passes:
        return "done"
    if retry_count >= retry_limit:
        return "failed"
    return "pending"


def render_status(plan: Plan, retry_limit: int) -> list[str]:
    failed = len(plan.failed_stories(retry_limit))
    completed = plan.completed_count()
    total = len(plan.stories)
    lines = [
        f"Project: {plan.project_name}",
    ]
    if plan.branch_name:
        lines.append(f"Branch: {plan.branch_name}")
    lines.append(
        f"Stories: {total} total, {completed} completed, "
        f"{total - completed - failed} pending, {failed} failed"
    )
    for story in plan.stories:
        state = _story_state(story.passes, story.retry_count, retry_limit)
        lines.append(
            f"  [{state:<7}] {story.id} (priority {story.priority}, "
            f"attempts {story.retry_count}) {story.title}"
        )
    return lines


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def status_command(config_value: str) -> None:
    work_dir = Path.cwd().resolve()
    config = _load(work_dir, config_value)
    store = _build_store(config)
    if not store.exists():
        raise click.ClickException(
            f"No plan found at {store.path}. Run 'storyloop run PROMPT' to create one."
        )
    try:
        plan = store.load()
    except (CorruptStateError, LockTimeoutError) as exc:
        raise click.ClickException(str(exc)) from exc
    for line in render_status(plan, config.run.retry_limit):
        click.echo(line)


if __name__ == "__main__":
    cli()
