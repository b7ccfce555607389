"""
Run launch and process management.

Creates run records, starts one detached supervisor process per run, and
handles operator cancellation and retries. Nothing here waits on a spawned
supervisor; progress is observed through the run record.
"""

import os
import re
import signal
import subprocess
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .backend import BackendClient
from .config import RunLoopConfig
from .errors import ConfigurationError, InvalidBranchNameError, SpawnError
from .models import ExecutorMode, Run, RunReason, RunStatus, Sprint, effective_max_iterations, utc_now
from .providers import build_agent_options, resolve_agent_name
from . import ui


BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
BRANCH_FORBIDDEN = ("~", "^", ":", "?", "*", "[")
RUNNER_LOG_DIR = Path("plans") / "runs"


def validate_branch_name(name: Optional[str]) -> str:
    """
    Check a sandbox branch name before anything touches git.

    Returns the stripped name.

    Raises:
        InvalidBranchNameError: If the name is not a safe git branch name
    """
    name = (name or "").strip()
    problem = None
    if not name:
        problem = "is required"
    elif re.search(r"\s", name):
        problem = "may not contain whitespace"
    elif ".." in name:
        problem = "may not contain '..'"
    elif name.startswith("/") or name.endswith("/"):
        problem = "may not start or end with '/'"
    elif name.endswith(".lock"):
        problem = "may not end with '.lock'"
    elif any(ch in name for ch in BRANCH_FORBIDDEN):
        problem = "may not contain any of ~ ^ : ? * ["
    elif not BRANCH_PATTERN.match(name):
        problem = "may only include letters, numbers, '.', '-', '_' and '/'"

    if problem:
        raise InvalidBranchNameError(f"Branch name {name!r} {problem}")
    return name


def resolve_sprint(backend: BackendClient, sprint_id: Optional[str] = None, board_id: Optional[str] = None) -> Sprint:
    """
    The explicitly requested sprint (sprint id wins over the legacy board id),
    else the most recently created non-archived sprint.
    """
    requested = sprint_id or board_id
    if requested:
        sprint = backend.read_sprint(requested)
        if sprint.is_archived:
            raise ConfigurationError(f"Sprint {requested} is archived")
        return sprint

    candidates = [s for s in backend.list_sprints() if not s.is_archived]
    if not candidates:
        raise ConfigurationError(f"No sprint found for project {backend.project_id}")
    candidates.sort(key=lambda s: s.created_at or "", reverse=True)
    return candidates[0]


def select_task_ids(sprint: Sprint) -> list[str]:
    return sprint.selectable_task_ids()


def resolve_runner_command(mode: ExecutorMode, run_id: str, project_path: Path) -> tuple[list[str], Path]:
    """Command line and working directory for a run's supervisor process."""
    if mode == ExecutorMode.DOCKER:
        cmd = [
            "docker", "compose", "run", "--rm", "runner",
            "python", "-m", "runloop", "supervise", "--run-id", run_id,
        ]
    else:
        cmd = [sys.executable, "-m", "runloop", "supervise", "--run-id", run_id]
    return cmd, Path(project_path)


def new_run_id() -> str:
    return f"run-{uuid.uuid4()}"


@dataclass
class LaunchRequest:
    branch_name: str
    sprint_id: Optional[str] = None
    board_id: Optional[str] = None
    max_iterations: Optional[int] = None
    triggered_by_id: Optional[str] = None


class RunLauncher:
    """Creates runs and manages their supervisor processes."""

    def __init__(self, backend: BackendClient, config: RunLoopConfig, log_to_file: bool = True):
        self.backend = backend
        self.config = config
        self.log_to_file = log_to_file

    def runner_log_path(self, run_id: str) -> Path:
        return self.config.project_path / RUNNER_LOG_DIR / f"{run_id}.runner.log"

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(self, request: LaunchRequest) -> Run:
        """
        Create a queued run and start its supervisor.

        Raises:
            ConfigurationError: Bad branch, bad iteration cap, unknown agent or no
                sprint (no run is created)
            SpawnError: The process didn't start (the run is recorded as failed)
        """
        branch = validate_branch_name(request.branch_name)
        if request.max_iterations is not None and request.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be a positive integer, got {request.max_iterations}"
            )
        settings = self.backend.read_settings()
        agent_name, _ = build_agent_options(settings, self.config)
        resolve_agent_name(agent_name)

        sprint = resolve_sprint(self.backend, request.sprint_id, request.board_id)

        run = Run(
            run_id=new_run_id(),
            project_id=self.config.project_id,
            sprint_id=sprint.id,
            sprint_name=sprint.name,
            max_iterations=effective_max_iterations(request.max_iterations, settings.max_iterations),
            executor_mode=self.config.executor_mode,
            sandbox_path=str(self.config.project_path),
            sandbox_branch=branch,
            selected_task_ids=select_task_ids(sprint),
            triggered_by_id=request.triggered_by_id,
        )
        run.last_message = "Queued"
        self.backend.write_run(run)
        return self._spawn(run)

    def _spawn(self, run: Run) -> Run:
        cmd, cwd = resolve_runner_command(run.executor_mode, run.run_id, self.config.project_path)
        env = os.environ.copy()
        env.update(self.config.runner_env())

        log_file = None
        try:
            if self.log_to_file:
                log_path = self.runner_log_path(run.run_id)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = open(log_path, "a", encoding="utf-8")
            output = log_file if log_file is not None else subprocess.DEVNULL
            process = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            run.add_error(f"Runner spawn failed: {e}")
            run.transition(RunStatus.FAILED, RunReason.ERROR)
            run.last_message = "Failed to spawn runner process"
            self.backend.write_run(run)
            raise SpawnError(f"Could not start supervisor for {run.run_id}: {e}") from e
        finally:
            # The child holds its own descriptor
            if log_file is not None:
                log_file.close()

        # The supervisor may already have moved the run on; only the pid is ours to set
        stored = self.backend.read_run(run.run_id)
        stored.pid = process.pid
        self.backend.write_run(stored)
        ui.console.print(f"[{ui.SUCCESS}]Started {run.run_id}[/] [{ui.DIM}](pid {process.pid}: {' '.join(cmd)})[/]")
        return stored

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel(self, run_id: str) -> Run:
        """
        Request cancellation; a repeat request force-stops the process.

        Finished runs are returned untouched.
        """
        run = self.backend.read_run(run_id)
        if run.is_terminal:
            return run

        already_requested = bool(run.cancellation_requested_at) or self.backend.check_cancellation(run_id)
        if not already_requested:
            self.backend.request_cancellation(run_id)
            run.cancellation_requested_at = utc_now()
            run.last_message = "Cancellation requested; the run stops before its next iteration"
            self.backend.write_run(run)
            self.backend.append_log(run_id, "Cancellation requested by operator.\n")
            return run

        message = "Run canceled by operator"
        if run.pid:
            try:
                os.killpg(os.getpgid(run.pid), signal.SIGTERM)
                message = f"Run canceled by operator (sent SIGTERM to process group of pid {run.pid})"
            except ProcessLookupError:
                message = f"Run canceled by operator (pid {run.pid} had already exited)"
            except PermissionError as e:
                message = f"Run canceled by operator (could not signal pid {run.pid}: {e})"

        if not run.cancellation_requested_at:
            run.cancellation_requested_at = utc_now()
        run.transition(RunStatus.CANCELED, RunReason.CANCELED)
        run.last_message = message
        self.backend.write_run(run)
        self.backend.append_log(run_id, f"{message}.\n")
        return run

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry(self, run_id: str) -> Run:
        """Start a new run over the same sprint and branch as a finished one."""
        previous = self.backend.read_run(run_id)
        if not previous.is_terminal:
            raise ConfigurationError(f"Cannot retry a run in status: {previous.status.value}")

        sprint = self.backend.read_sprint(previous.sprint_id)
        run = Run(
            run_id=new_run_id(),
            project_id=previous.project_id or self.config.project_id,
            sprint_id=sprint.id,
            sprint_name=sprint.name,
            max_iterations=previous.max_iterations,
            executor_mode=previous.executor_mode,
            sandbox_path=previous.sandbox_path or str(self.config.project_path),
            sandbox_branch=previous.sandbox_branch,
            selected_task_ids=select_task_ids(sprint),
            triggered_by_id=previous.triggered_by_id,
            retry_of=previous.run_id,
        )
        run.last_message = f"Retrying {previous.run_id}"
        self.backend.write_run(run)
        return self._spawn(run)
