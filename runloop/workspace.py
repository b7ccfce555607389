"""
Sandbox workspace preparation.

Checks out the run's branch in the sandbox checkout and writes the task plan
and progress log the agent prompt points at.
"""

import json
import subprocess
from pathlib import Path
from typing import Optional

from .errors import RunLoopError
from .models import Sprint
from .prompts import PLAN_FILE, PROGRESS_FILE


class WorkspaceError(RunLoopError):
    """Raised when the sandbox can't be prepared."""
    pass


class GitWorkspace:
    """Handles git and plan-file operations in one sandbox checkout."""

    def __init__(self, repo_path: Path):
        """
        Args:
            repo_path: Sandbox directory (a repository checkout)
        """
        self.repo_path = Path(repo_path)

    @property
    def plan_path(self) -> Path:
        return self.repo_path / PLAN_FILE

    @property
    def progress_path(self) -> Path:
        return self.repo_path / PROGRESS_FILE

    def _git(self, *args: str, check: bool = False) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            check=check,
        )

    def is_git_repo(self) -> bool:
        """Check if the sandbox is a git repository."""
        try:
            result = self._git("rev-parse", "--git-dir")
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def has_changes(self) -> bool:
        """Check if there are uncommitted changes."""
        try:
            result = self._git("status", "--porcelain", check=True)
        except subprocess.CalledProcessError:
            return False
        return bool(result.stdout.strip())

    def current_branch(self) -> Optional[str]:
        result = self._git("rev-parse", "--abbrev-ref", "HEAD")
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").returncode == 0

    def checkout_branch(self, branch: str) -> bool:
        """
        Switch the sandbox to `branch`, creating it from HEAD if needed.

        Returns True if the branch was created.
        """
        if self.current_branch() == branch:
            return False

        created = not self.branch_exists(branch)
        args = ["checkout", "-b", branch] if created else ["checkout", branch]
        result = self._git(*args)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise WorkspaceError(f"git {' '.join(args)} failed (code {result.returncode}). {detail}".strip())
        return created

    def write_plan(self, sprint: Sprint, task_ids: Optional[list[str]] = None):
        """Write the eligible tasks as the agent's plan file."""
        tasks = [t.to_dict() for t in sprint.eligible_tasks(task_ids)]
        payload = {
            "id": sprint.id,
            "name": sprint.name,
            "goal": sprint.goal,
            "tasks": tasks,
        }
        self.plan_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.plan_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.plan_path)

    def ensure_progress_log(self, run_id: str):
        if self.progress_path.exists():
            with open(self.progress_path, "a", encoding="utf-8") as f:
                f.write(f"\n# Run {run_id} resumed\n")
        else:
            self.progress_path.write_text(f"# Run {run_id} progress\n", encoding="utf-8")

    def untrack_loop_files(self):
        """Keep loop bookkeeping files out of the agent's commits when tracked."""
        for rel in (PLAN_FILE, PROGRESS_FILE):
            self._git("update-index", "--skip-worktree", rel)

    def prepare(self, run_id: str, sprint: Sprint, branch: Optional[str], task_ids: Optional[list[str]] = None):
        """Everything the sandbox needs before the first iteration."""
        if not self.repo_path.is_dir():
            raise WorkspaceError(f"Sandbox path does not exist: {self.repo_path}")

        is_repo = self.is_git_repo()
        if branch and is_repo:
            self.checkout_branch(branch)

        self.write_plan(sprint, task_ids)
        self.ensure_progress_log(run_id)

        if is_repo:
            self.untrack_loop_files()

    def commit_count(self, base: str = "main") -> Optional[int]:
        """Commits on HEAD that aren't on `base`, or None if git can't tell."""
        result = self._git("rev-list", "--count", f"{base}..HEAD")
        if result.returncode != 0:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None
