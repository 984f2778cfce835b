from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from storyloop.errors import StoryloopError
from storyloop.streaming import (
    MAX_LINE_BYTES,
    LineSink,
    OutputLine,
    multiplex,
    plain_lines,
)

TERMINATE_GRACE_SECONDS = 5.0


class AgentInvocationError(StoryloopError):
    """Raised when an agent run fails or exits abnormally."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentProcessError(AgentInvocationError):
    """Raised when the agent process cannot be started or wired up."""


class InvocationCancelledError(AgentInvocationError):
    """Raised when cancellation stopped the agent before it exited."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        sink: LineSink,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Run the agent once, forwarding every output line to ``sink``."""


class SubprocessAgentBackend(AgentBackend):
    """Runs one external process per invocation and feeds it the prompt on stdin."""

    binary: str = ""

    def __init__(
        self,
        *,
        model: str = "",
        working_directory: Path | None = None,
        binary: str | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        if binary is not None:
            self.binary = binary

    @abstractmethod
    def build_command(self) -> list[str]:
        """Command line for one invocation; the prompt travels over stdin."""

    def transform_stdout(self, text: str, is_error: bool) -> list[OutputLine]:
        return plain_lines(text, is_error)

    def transform_stderr(self, text: str, is_error: bool) -> list[OutputLine]:
        return plain_lines(text, is_error)

    def start_message(self) -> str:
        if self.model:
            return f"Starting {self.name} with model {self.model}..."
        return f"Starting {self.name}..."

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before the prompt was fully written")
        finally:
            process.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await process.stdin.wait_closed()

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def invoke(
        self,
        prompt: str,
        sink: LineSink,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        command = self.build_command()
        logger.debug(
            "Invoking {} model={} prompt_length={} cwd={}",
            self.name,
            self.model,
            len(prompt),
            self.working_directory,
        )
        await sink(OutputLine(text=self.start_message()))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_BYTES,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"{self.name} binary not found: {command[0]}",
                backend=self.name,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise AgentProcessError(
                f"could not start {self.name} ({command[0]}): {exc}",
                backend=self.name,
                retriable=False,
            ) from exc

        drain = asyncio.ensure_future(
            asyncio.gather(
                self._feed_stdin(process, prompt),
                multiplex(
                    process.stdout,
                    process.stderr,
                    sink,
                    stdout_transform=self.transform_stdout,
                    stderr_transform=self.transform_stderr,
                ),
            )
        )
        cancel_wait = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        try:
            waiters = {drain} if cancel_wait is None else {drain, cancel_wait}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if not drain.done():
                logger.debug("Cancellation requested, stopping {} (pid={})", self.name, process.pid)
                await self._stop(process)
                with contextlib.suppress(Exception):
                    await drain
                raise InvocationCancelledError(
                    f"{self.name} invocation cancelled",
                    backend=self.name,
                    retriable=False,
                )
            await drain
        except BaseException:
            if process.returncode is None:
                await self._stop(process)
            if not drain.done():
                drain.cancel()
            raise
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        return_code = await process.wait()
        if return_code != 0:
            logger.debug("{} exited with code {}", self.name, return_code)
            raise AgentInvocationError(
                f"{self.name} with model {self.model or 'default'} exited with code {return_code}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        logger.debug("{} completed successfully", self.name)
