from __future__ import annotations

from pathlib import Path

from storyloop.backends.base import (
    AgentBackend,
    AgentInvocationError,
    AgentProcessError,
    InvocationCancelledError,
    SubprocessAgentBackend,
)
from storyloop.backends.claude import CLAUDE_MODEL_PREFIX, ClaudeCodeBackend
from storyloop.backends.opencode import OpenCodeBackend


def build_backend(model: str, working_directory: Path | None = None) -> SubprocessAgentBackend:
    if model.startswith(CLAUDE_MODEL_PREFIX):
        return ClaudeCodeBackend(model=model, working_directory=working_directory)
    return OpenCodeBackend(model=model, working_directory=working_directory)


__all__ = [
    "AgentBackend",
    "AgentInvocationError",
    "AgentProcessError",
    "ClaudeCodeBackend",
    "InvocationCancelledError",
    "OpenCodeBackend",
    "SubprocessAgentBackend",
    "build_backend",
]
