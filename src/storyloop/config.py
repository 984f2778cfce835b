from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.actionability import DEFAULT_VAGUE_ADJECTIVES, DEFAULT_VAGUE_VERBS
from storyloop.errors import StoryloopError

CONFIG_FILE_NAME = "storyloop.toml"
DEFAULT_MODEL = "opencode/big-pickle"
SUPPORTED_MODELS = (
    "opencode/big-pickle",
    "claude-code/sonnet",
    "claude-code/haiku",
    "claude-code/opus",
)


class ConfigError(StoryloopError):
    """Raised when configuration is unreadable or invalid."""


@dataclass(slots=True)
class AgentConfig:
    model: str = DEFAULT_MODEL


@dataclass(slots=True)
class RunConfig:
    max_iterations: int = 50
    retry_limit: int = 3
    plan_file: str = "prd.json"


@dataclass(slots=True)
class StoreConfig:
    lock_timeout_seconds: float = 30.0
    lock_retry_seconds: float = 0.1


@dataclass(slots=True)
class EventsConfig:
    capacity: int = 10_000


@dataclass(slots=True)
class ActionabilityConfig:
    vague_verbs: list[str] = field(default_factory=lambda: list(DEFAULT_VAGUE_VERBS))
    vague_adjectives: list[str] = field(default_factory=lambda: list(DEFAULT_VAGUE_ADJECTIVES))


@dataclass(slots=True)
class StoryloopConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    run: RunConfig = field(default_factory=RunConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    actionability: ActionabilityConfig = field(default_factory=ActionabilityConfig)
    work_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def default(cls) -> StoryloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict, work_dir: Path | None = None) -> StoryloopConfig:
        try:
            config = cls(
                agent=AgentConfig(**data.get("agent", {})),
                run=RunConfig(**data.get("run", {})),
                store=StoreConfig(**data.get("store", {})),
                events=EventsConfig(**data.get("events", {})),
                actionability=ActionabilityConfig(**data.get("actionability", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        if work_dir is not None:
            config.work_dir = work_dir
        return config

    def to_dict(self) -> dict:
        return {
            "agent": {
                "model": self.agent.model,
            },
            "run": {
                "max_iterations": self.run.max_iterations,
                "retry_limit": self.run.retry_limit,
                "plan_file": self.run.plan_file,
            },
            "store": {
                "lock_timeout_seconds": self.store.lock_timeout_seconds,
                "lock_retry_seconds": self.store.lock_retry_seconds,
            },
            "events": {
                "capacity": self.events.capacity,
            },
            "actionability": {
                "vague_verbs": list(self.actionability.vague_verbs),
                "vague_adjectives": list(self.actionability.vague_adjectives),
            },
        }

    @property
    def plan_path(self) -> Path:
        return self.work_dir / self.run.plan_file

    def validate(self) -> None:
        if self.agent.model not in SUPPORTED_MODELS:
            raise ConfigError(
                f"unsupported model: {self.agent.model} (supported: {', '.join(SUPPORTED_MODELS)})"
            )
        if self.run.max_iterations < 0:
            raise ConfigError(
                f"max_iterations must be non-negative, got {self.run.max_iterations}"
            )
        if self.run.retry_limit < 0:
            raise ConfigError(f"retry_limit must be non-negative, got {self.run.retry_limit}")
        plan_file = self.run.plan_file
        if not plan_file:
            raise ConfigError("plan_file cannot be empty")
        if Path(plan_file).is_absolute():
            raise ConfigError(f"plan_file cannot be an absolute path, got {plan_file!r}")
        if ".." in plan_file:
            raise ConfigError(f"plan_file cannot contain path traversal, got {plan_file!r}")
        if Path(plan_file).name != plan_file or "\\" in plan_file:
            raise ConfigError(f"plan_file must be a simple filename, got {plan_file!r}")
        if self.store.lock_timeout_seconds <= 0 or self.store.lock_retry_seconds <= 0:
            raise ConfigError("lock timings must be positive")
        if self.events.capacity < 1:
            raise ConfigError(f"events capacity must be positive, got {self.events.capacity}")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StoryloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "run", "store", "events", "actionability"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(work_dir: Path, path: Path | None = None) -> StoryloopConfig:
    config_path = path or work_dir / CONFIG_FILE_NAME
    if not config_path.exists():
        config = StoryloopConfig.default()
        config.work_dir = work_dir
    else:
        try:
            data = tomllib.loads(config_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"failed to parse config file {config_path}: {exc}") from exc
        config = StoryloopConfig.from_dict(data, work_dir=work_dir)
    config.validate()
    return config


def save_config(path: Path, config: StoryloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
