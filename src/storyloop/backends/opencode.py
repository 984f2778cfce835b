from __future__ import annotations

from storyloop.backends.base import SubprocessAgentBackend


class OpenCodeBackend(SubprocessAgentBackend):
    name = "opencode"
    binary = "opencode"

    def build_command(self) -> list[str]:
        command = [self.binary, "run", "--print-logs"]
        if self.model:
            command.extend(["--model", self.model])
        return command
