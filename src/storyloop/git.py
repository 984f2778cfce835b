from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from storyloop.errors import GitError


class BranchManager(ABC):
    @abstractmethod
    def checkout_branch(self, name: str) -> None:
        """Check out ``name``, creating it from HEAD when it does not exist."""

    @abstractmethod
    def commit(self, message: str) -> bool:
        """Stage everything and commit. Returns False when there was nothing to commit."""


def story_commit_message(story_id: str, title: str, description: str) -> str:
    return f"feat: {title}\n\n{description}\n\nStory: {story_id}"


class GitBranchManager(BranchManager):
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def _run_git(
        self,
        args: list[str],
        *,
        operation: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError(operation, "git executable not found") from exc
        if check and proc.returncode != 0:
            raise GitError(operation, proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repository(self) -> bool:
        proc = self._run_git(
            ["rev-parse", "--is-inside-work-tree"], operation="rev-parse", check=False
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self._run_git(
            ["rev-parse", "--abbrev-ref", "HEAD"], operation="current branch"
        ).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{name}"],
            operation="show-ref",
            check=False,
        )
        return proc.returncode == 0

    def has_changes(self) -> bool:
        proc = self._run_git(["status", "--porcelain"], operation="status")
        return bool(proc.stdout.strip())

    def checkout_branch(self, name: str) -> None:
        if self.branch_exists(name):
            logger.debug("Checking out existing branch {}", name)
            self._run_git(["checkout", name], operation="checkout")
            return
        logger.debug("Creating branch {}", name)
        self._run_git(["checkout", "-b", name], operation="create branch")

    def commit(self, message: str) -> bool:
        if not self.has_changes():
            logger.debug("Nothing to commit in {}", self.repo_root)
            return False
        self._run_git(["add", "-A"], operation="stage all")
        self._run_git(["commit", "-m", message], operation="commit")
        return True
