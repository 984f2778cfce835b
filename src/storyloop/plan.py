from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from storyloop.errors import PlanValidationError

MAX_STORIES = 100
MAX_CONTEXT_SIZE = 100_000
MAX_STORY_DESCRIPTION_SIZE = 10_000
MAX_ACCEPTANCE_CRITERIA = 50

_PLAN_KEYS = ("version", "project_name", "branch_name", "context", "test_spec", "stories")
_STORY_KEYS = (
    "id",
    "title",
    "description",
    "acceptance_criteria",
    "test_guidance",
    "priority",
    "passes",
    "retry_count",
)
_LEGACY_STORY_KEYS = {"test_spec"}


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


@dataclass(slots=True)
class Story:
    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    test_guidance: str = ""
    priority: int = 1
    passes: bool = False
    retry_count: int = 0
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Story:
        story_id = _as_str(data.get("id")).strip()
        criteria = data.get("acceptance_criteria") or []
        if isinstance(criteria, str):
            criteria = [criteria]
        elif not isinstance(criteria, list):
            raise PlanValidationError(
                f"acceptance_criteria must be a list, got {type(criteria).__name__} "
                f"(story {story_id})"
            )
        for key in ("priority", "retry_count"):
            value = data.get(key)
            if value is not None and not isinstance(value, (int, float, str)):
                raise PlanValidationError(
                    f"{key} must be a number, got {type(value).__name__} (story {story_id})"
                )
        guidance = data.get("test_guidance")
        if guidance is None:
            guidance = data.get("test_spec")
        extras = {
            key: value
            for key, value in data.items()
            if key not in _STORY_KEYS and key not in _LEGACY_STORY_KEYS
        }
        return cls(
            id=story_id,
            title=_as_str(data.get("title")),
            description=_as_str(data.get("description")),
            acceptance_criteria=[_as_str(item) for item in criteria],
            test_guidance=_as_str(guidance),
            priority=_as_int(data.get("priority"), default=0),
            passes=bool(data.get("passes", False)),
            retry_count=_as_int(data.get("retry_count"), default=0),
            extras=extras,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "test_guidance": self.test_guidance,
            "priority": self.priority,
            "passes": self.passes,
            "retry_count": self.retry_count,
        }
        payload.update(self.extras)
        return payload

    def validate(self, seen_ids: set[str]) -> None:
        if not self.id:
            raise PlanValidationError("story ID cannot be empty")
        if self.id in seen_ids:
            raise PlanValidationError(f"duplicate story ID: {self.id}")
        if not self.title.strip():
            raise PlanValidationError(f"story title cannot be empty (story {self.id})")
        if len(self.description) > MAX_STORY_DESCRIPTION_SIZE:
            raise PlanValidationError(
                f"story description size {len(self.description)} exceeds "
                f"{MAX_STORY_DESCRIPTION_SIZE} (story {self.id})"
            )
        if len(self.acceptance_criteria) > MAX_ACCEPTANCE_CRITERIA:
            raise PlanValidationError(
                f"story {self.id} has {len(self.acceptance_criteria)} acceptance criteria "
                f"(max {MAX_ACCEPTANCE_CRITERIA})"
            )
        if self.priority < 1:
            raise PlanValidationError(
                f"story priority must be positive, got {self.priority} (story {self.id})"
            )
        if self.retry_count < 0:
            raise PlanValidationError(
                f"story retry count cannot be negative, got {self.retry_count} (story {self.id})"
            )


@dataclass(slots=True)
class Plan:
    project_name: str
    stories: list[Story] = field(default_factory=list)
    branch_name: str = ""
    context: str = ""
    test_spec: str = ""
    version: int = 0
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        raw_stories = data.get("stories") or []
        if not isinstance(raw_stories, list):
            raise PlanValidationError("stories must be a list")
        stories: list[Story] = []
        for index, item in enumerate(raw_stories, start=1):
            if not isinstance(item, dict):
                raise PlanValidationError(f"story {index} is not an object")
            stories.append(Story.from_dict(item))
        return cls(
            project_name=_as_str(data.get("project_name")),
            stories=stories,
            branch_name=_as_str(data.get("branch_name")),
            context=_as_str(data.get("context")),
            test_spec=_as_str(data.get("test_spec")),
            version=_as_int(data.get("version"), default=0),
            extras={key: value for key, value in data.items() if key not in _PLAN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "project_name": self.project_name,
            "branch_name": self.branch_name,
            "context": self.context,
            "test_spec": self.test_spec,
            "stories": [story.to_dict() for story in self.stories],
        }
        payload.update(self.extras)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2) + "\n"

    def get_story(self, story_id: str) -> Story | None:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def all_completed(self) -> bool:
        """True when every story passes. An empty plan counts as complete."""
        return all(story.passes for story in self.stories)

    def completed_count(self) -> int:
        return sum(1 for story in self.stories if story.passes)

    def next_pending_story(self, retry_limit: int) -> Story | None:
        """Return the most urgent story that still has retries left.

        Lower priority values are more urgent; ties keep list order. ``None``
        means nothing is eligible, which is not the same as all-complete.
        """
        best: Story | None = None
        for story in self.stories:
            if story.passes or story.retry_count >= retry_limit:
                continue
            if best is None or story.priority < best.priority:
                best = story
        return best

    def failed_stories(self, retry_limit: int) -> list[Story]:
        return [
            story
            for story in self.stories
            if not story.passes and story.retry_count >= retry_limit
        ]

    def validate(self) -> None:
        if not self.project_name.strip():
            raise PlanValidationError("missing project_name")
        if len(self.stories) > MAX_STORIES:
            raise PlanValidationError(
                f"story count {len(self.stories)} exceeds maximum {MAX_STORIES}"
            )
        if len(self.context) > MAX_CONTEXT_SIZE:
            raise PlanValidationError(
                f"context size {len(self.context)} exceeds maximum {MAX_CONTEXT_SIZE}"
            )
        seen_ids: set[str] = set()
        for story in self.stories:
            story.validate(seen_ids)
            seen_ids.add(story.id)

    def validate_generated(self) -> None:
        self.validate()
        if not self.stories:
            raise PlanValidationError("no stories defined")
        for story in self.stories:
            if not story.description.strip():
                raise PlanValidationError(f"story {story.id} missing description")
            if not any(item.strip() for item in story.acceptance_criteria):
                raise PlanValidationError(f"story {story.id} missing acceptance_criteria")
