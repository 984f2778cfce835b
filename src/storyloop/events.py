from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from storyloop.errors import StoryloopError
from storyloop.streaming import OutputLine

if TYPE_CHECKING:
    from storyloop.plan import Plan, Story

DEFAULT_EVENT_CAPACITY = 10_000


class EventStreamClosedError(StoryloopError):
    """Raised when publishing to a stream that has been closed."""


class FailureReason(str, Enum):
    CANCELLED = "cancelled"
    RETRIES_EXHAUSTED = "retries_exhausted"
    ITERATION_CEILING = "iteration_ceiling"
    GENERATION = "generation"
    LOAD = "load"
    CORRUPT_STATE = "corrupt_state"
    LOCK_TIMEOUT = "lock_timeout"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True, slots=True)
class StorySnapshot:
    id: str
    title: str
    priority: int
    passes: bool
    retry_count: int

    @classmethod
    def of(cls, story: Story) -> StorySnapshot:
        return cls(
            id=story.id,
            title=story.title,
            priority=story.priority,
            passes=story.passes,
            retry_count=story.retry_count,
        )


@dataclass(frozen=True, slots=True)
class PlanSummary:
    project_name: str
    branch_name: str
    version: int
    stories: tuple[StorySnapshot, ...]

    @property
    def total(self) -> int:
        return len(self.stories)

    @property
    def completed(self) -> int:
        return sum(1 for story in self.stories if story.passes)

    @classmethod
    def of(cls, plan: Plan) -> PlanSummary:
        return cls(
            project_name=plan.project_name,
            branch_name=plan.branch_name,
            version=plan.version,
            stories=tuple(StorySnapshot.of(story) for story in plan.stories),
        )


@dataclass(frozen=True, slots=True)
class PlanningStarted:
    kind = "planning_started"


@dataclass(frozen=True, slots=True)
class PlanReady:
    summary: PlanSummary
    loaded: bool = False
    kind = "plan_ready"


@dataclass(frozen=True, slots=True)
class StoryStarted:
    story: StorySnapshot
    iteration: int
    kind = "story_started"


@dataclass(frozen=True, slots=True)
class OutputLineEvent:
    line: OutputLine
    kind = "output_line"


@dataclass(frozen=True, slots=True)
class StoryFinished:
    story: StorySnapshot
    success: bool
    error: str | None = None
    kind = "story_finished"


@dataclass(frozen=True, slots=True)
class RunCompleted:
    iterations: int
    kind = "run_completed"


@dataclass(frozen=True, slots=True)
class RunFailed:
    reason: FailureReason
    message: str
    failed_stories: tuple[StorySnapshot, ...] = field(default_factory=tuple)
    iterations: int = 0
    kind = "run_failed"


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    kind = "error"


@dataclass(frozen=True, slots=True)
class WarningEvent:
    message: str
    kind = "warning"


Event = (
    PlanningStarted
    | PlanReady
    | StoryStarted
    | OutputLineEvent
    | StoryFinished
    | RunCompleted
    | RunFailed
    | ErrorEvent
    | WarningEvent
)
EventHandler = Callable[[Event], Awaitable[None] | None]

_CLOSED = object()


def status_for(event: Event) -> RunStatus | None:
    if isinstance(event, RunCompleted):
        return RunStatus.COMPLETED
    if isinstance(event, RunFailed):
        if event.reason is FailureReason.CANCELLED:
            return RunStatus.CANCELLED
        return RunStatus.FAILED
    return None


class EventStream:
    """Bounded multi-producer/single-consumer event channel.

    ``publish`` waits while the queue is full; events are never dropped.
    """

    def __init__(self, capacity: int = DEFAULT_EVENT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Event stream capacity must be positive.")
        self.capacity = capacity
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=capacity)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, event: Event) -> None:
        if self._closed:
            raise EventStreamClosedError(f"Cannot publish {event.kind} after close.")
        await self._queue.put(event)

    async def publish_line(self, line: OutputLine) -> None:
        await self.publish(OutputLineEvent(line=line))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    async def drain(self, handler: EventHandler | None = None) -> RunStatus:
        """Consume until closed and derive the final status from the last terminal event."""
        status = RunStatus.INCOMPLETE
        async for event in self:
            terminal = status_for(event)
            if terminal is not None:
                status = terminal
            if handler is not None:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
        return status
