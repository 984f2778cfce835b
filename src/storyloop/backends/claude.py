from __future__ import annotations

import json
from typing import Any

from storyloop.backends.base import SubprocessAgentBackend
from storyloop.streaming import OutputLine

CLAUDE_MODEL_PREFIX = "claude-code/"


class ClaudeCodeBackend(SubprocessAgentBackend):
    name = "claude"
    binary = "claude"

    @property
    def cli_model(self) -> str:
        return self.model.removeprefix(CLAUDE_MODEL_PREFIX)

    def build_command(self) -> list[str]:
        command = [
            self.binary,
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
        ]
        if self.cli_model:
            command.extend(["--model", self.cli_model])
        return command

    @staticmethod
    def _content_items(event: dict[str, Any]) -> list[dict[str, Any]]:
        message = event.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        if isinstance(content, list):
            return [item for item in content if isinstance(item, dict)]
        return []

    @classmethod
    def parse_stream_event(cls, text: str) -> list[OutputLine]:
        """Translate one stream-json line into presentable output lines."""
        try:
            event = json.loads(text)
        except json.JSONDecodeError:
            return [OutputLine(text=text, verbose=True)]
        if not isinstance(event, dict):
            return [OutputLine(text=text, verbose=True)]

        event_type = event.get("type")
        subtype = event.get("subtype")
        if event_type == "system":
            if subtype == "init":
                return [OutputLine(text="Claude initialized", verbose=True)]
            return []
        if event_type == "assistant":
            lines: list[OutputLine] = []
            for item in cls._content_items(event):
                if item.get("type") == "text":
                    body = item.get("text")
                    if isinstance(body, str) and body:
                        lines.append(OutputLine(text=body))
                elif item.get("type") == "tool_use":
                    lines.append(OutputLine(text=f"Using tool: {item.get('name', 'unknown')}"))
            return lines
        if event_type == "user":
            return [OutputLine(text="Tool completed", verbose=True)]
        if event_type == "result":
            if subtype == "success":
                return [OutputLine(text="Task completed successfully", verbose=True)]
            if subtype == "error" or str(subtype or "").startswith("error"):
                return [OutputLine(text="Task failed", is_error=True)]
        return []

    def transform_stdout(self, text: str, is_error: bool) -> list[OutputLine]:
        return self.parse_stream_event(text)

    def transform_stderr(self, text: str, is_error: bool) -> list[OutputLine]:
        return [OutputLine(text=text, is_error=True, verbose=True)]
