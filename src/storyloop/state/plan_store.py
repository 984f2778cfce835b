from __future__ import annotations

import json
import os
import random
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger

from storyloop.errors import (
    CorruptStateError,
    LockTimeoutError,
    PlanNotFoundError,
    PlanStorageError,
)
from storyloop.plan import Plan

MAX_REPAIR_ATTEMPTS = 2
DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_RETRY_SECONDS = 0.1
TEMP_SUFFIX_RANGE = 100_000

_TRAILING_COMMA_PATTERN = re.compile(r",(\s*[}\]])")


class PlanStore(ABC):
    @property
    @abstractmethod
    def path(self) -> Path:
        """Location of the plan document."""

    @abstractmethod
    def exists(self) -> bool:
        """Return whether a plan document is present."""

    @abstractmethod
    def load(self) -> Plan:
        """Read the persisted plan."""

    @abstractmethod
    def save(self, plan: Plan) -> None:
        """Persist the plan, bumping its version."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the persisted plan. Idempotent."""


def _balanced_object_end(raw: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(raw)):
        char = raw[index]
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return index + 1
    return -1


def trim_to_balanced_object(raw: str) -> str:
    """Drop text before the first ``{`` and after its balanced closing brace."""
    start = raw.find("{")
    if start == -1:
        return raw
    end = _balanced_object_end(raw, start)
    if end == -1:
        return raw[start:]
    return raw[start:end]


def strip_trailing_commas(raw: str) -> str:
    """Remove commas that directly precede ``}`` or ``]`` outside strings."""
    parts: list[str] = []
    segment_start = 0
    in_string = False
    escaped = False
    for index, char in enumerate(raw):
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char != '"':
            continue
        if not in_string:
            parts.append(_TRAILING_COMMA_PATTERN.sub(r"\1", raw[segment_start:index]))
            segment_start = index
        else:
            parts.append(raw[segment_start : index + 1])
            segment_start = index + 1
        in_string = not in_string
    tail = raw[segment_start:]
    parts.append(tail if in_string else _TRAILING_COMMA_PATTERN.sub(r"\1", tail))
    return "".join(parts)


REPAIRS: tuple[Callable[[str], str], ...] = (trim_to_balanced_object, strip_trailing_commas)


def parse_plan_document(raw: str, *, path: Path | None = None) -> dict[str, Any]:
    """Parse a plan document, applying bounded structural repairs on failure."""
    candidate = raw
    last_error: json.JSONDecodeError | None = None
    for attempt in range(MAX_REPAIR_ATTEMPTS + 1):
        if attempt > 0:
            candidate = REPAIRS[attempt - 1](candidate)
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
            continue
        if attempt > 0:
            logger.warning("Plan document {} repaired after {} pass(es)", path, attempt)
        if not isinstance(payload, dict):
            raise CorruptStateError("Plan document must be a JSON object.", path=path)
        return payload
    raise CorruptStateError(
        f"Plan document {path} is unparseable after {MAX_REPAIR_ATTEMPTS} repairs: {last_error}",
        path=path,
    )


class FilePlanStore(PlanStore):
    """Plan document on disk guarded by a cooperative lock file."""

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        lock_retry_seconds: float = DEFAULT_LOCK_RETRY_SECONDS,
    ) -> None:
        self._path = path.resolve()
        self.lock_file = self._path.with_name(f"{self._path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_retry_seconds = lock_retry_seconds

    @property
    def path(self) -> Path:
        return self._path

    def _holder_is_gone(self) -> bool:
        """True when the lock file names a process that no longer exists."""
        if os.name != "posix":
            return False
        try:
            pid = int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if pid <= 0 or pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _plan_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._holder_is_gone():
                    logger.warning("Removing stale lock {} left by a dead process", self.lock_file)
                    try:
                        self.lock_file.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise LockTimeoutError(self.lock_file, self.lock_timeout_seconds) from exc
                time.sleep(self.lock_retry_seconds)
            except OSError as exc:
                raise PlanStorageError(
                    f"Cannot create lock file {self.lock_file}: {exc}", path=self._path
                ) from exc

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _temp_path(self) -> Path:
        suffix = f"{int(time.time())}.{random.randrange(TEMP_SUFFIX_RANGE)}"
        return self._path.with_name(f".{self._path.name}.tmp.{suffix}")

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> Plan:
        with self._plan_lock():
            try:
                raw = self._path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError as exc:
                raise PlanNotFoundError(
                    f"Plan file not found: {self._path}", path=self._path
                ) from exc
            except OSError as exc:
                raise PlanStorageError(
                    f"Cannot read plan file {self._path}: {exc}", path=self._path
                ) from exc

        payload = parse_plan_document(raw, path=self._path)
        plan = Plan.from_dict(payload)
        plan.validate()
        logger.debug(
            "Loaded plan {} version={} stories={}",
            self._path.name,
            plan.version,
            len(plan.stories),
        )
        return plan

    def save(self, plan: Plan) -> None:
        plan.validate()
        with self._plan_lock():
            plan.version += 1
            serialized = plan.to_json()
            temp_path = self._temp_path()
            try:
                fd = os.open(temp_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(serialized)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(temp_path, self._path)
            except OSError as exc:
                plan.version -= 1
                try:
                    temp_path.unlink()
                except OSError:
                    pass
                raise PlanStorageError(
                    f"Cannot write plan file {self._path}: {exc}", path=self._path
                ) from exc
        logger.debug("Saved plan {} version={}", self._path.name, plan.version)

    def delete(self) -> None:
        with self._plan_lock():
            try:
                self._path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise PlanStorageError(
                    f"Cannot delete plan file {self._path}: {exc}", path=self._path
                ) from exc
        logger.debug("Deleted plan {}", self._path.name)
