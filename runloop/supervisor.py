"""
Run supervisor: the iteration loop behind one run.

One supervisor process owns one run. It loads the run, its sprint and the
project settings through the backend, then repeatedly picks a task, hands it
to the configured agent and records the outcome. Every state change goes
through BackendClient; a failed write ends the run as failed.

State machine:

    queued -> running -> completed | failed | stopped | canceled
"""

from pathlib import Path
from typing import Callable, Optional

from .backend import BackendClient
from .errors import BackendError, ConfigurationError
from .models import (
    Run, RunReason, RunStatus, Sprint, Task, TaskStatus,
    effective_max_iterations, utc_now,
)
from .prompts import has_completion_sentinel
from .providers import Agent, AgentContext, AgentResult, build_agent_options, create_agent
from .workspace import GitWorkspace
from . import ui


MAX_FAILURE_NOTES = 1200
LOG_FLUSH_CHARS = 2000


def limit_output(output: str, max_length: int = MAX_FAILURE_NOTES) -> str:
    if not output:
        return ""
    if len(output) <= max_length:
        return output.strip()
    return f"{output[:max_length]}\n...(output truncated)..."


class RunLogSink:
    """
    Buffered writer over a run's persisted log.

    Text accumulates until flush() or until the buffer passes `flush_at`
    characters, then goes out as one log entry. Entries are sent in the order
    they were written; backend failures propagate to the caller.
    """

    def __init__(self, backend: BackendClient, run_id: str, flush_at: int = LOG_FLUSH_CHARS, echo: bool = False):
        self.backend = backend
        self.run_id = run_id
        self.flush_at = flush_at
        self.echo = echo
        self.entries_written = 0
        self._buffer: list[str] = []
        self._size = 0

    def write(self, text):
        if isinstance(text, (list, tuple)):
            text = "\n".join(text) + "\n"
        if not text:
            return
        self._buffer.append(text)
        self._size += len(text)
        if self.echo:
            ui.print_agent_output(text)
        if self._size >= self.flush_at:
            self.flush()

    def flush(self):
        if not self._buffer:
            return
        entry = "".join(self._buffer)
        self._buffer = []
        self._size = 0
        self.backend.append_log(self.run_id, entry)
        self.entries_written += 1


class RunSupervisor:
    """Drives a single run from queued to a terminal status."""

    def __init__(
        self,
        backend: BackendClient,
        run_id: str,
        config=None,
        agent_factory: Callable[..., Agent] = create_agent,
        workspace_factory: Optional[Callable[[Path], GitWorkspace]] = GitWorkspace,
        verbose: bool = False,
    ):
        """
        Args:
            backend: Client every read and write goes through
            run_id: Run to execute
            config: Optional RunLoopConfig (agent defaults, project path)
            agent_factory: create_agent-compatible factory
            workspace_factory: Builds the sandbox workspace; None skips sandbox preparation
            verbose: Echo agent output to the console
        """
        self.backend = backend
        self.run_id = run_id
        self.config = config
        self.agent_factory = agent_factory
        self.workspace_factory = workspace_factory
        self.verbose = verbose

        self.run_record: Optional[Run] = None
        self.sprint: Optional[Sprint] = None
        self.agent: Optional[Agent] = None
        self.sandbox_dir: Optional[Path] = None
        self.workspace: Optional[GitWorkspace] = None
        self.log = RunLogSink(backend, run_id, echo=verbose)
        self.persist_failed = False

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> Run:
        """
        Execute the run and return its final record.

        Raises:
            BackendError: If the run record itself can't be loaded (there is
                nothing to record the failure on)
        """
        self.run_record = self.backend.read_run(self.run_id)
        if self.run_record.is_terminal:
            ui.print_warning(
                f"Run {self.run_id} is already {self.run_record.status.value}; nothing to do"
            )
            return self.run_record

        try:
            self._setup()
            self._loop()
        except Exception as e:
            # Anything past loading the record ends the run as failed
            self._fail(e)

        return self.run_record

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup(self):
        run = self.run_record
        settings = self.backend.read_settings()
        self.sprint = self.backend.read_sprint(run.sprint_id)

        run.max_iterations = effective_max_iterations(run.max_iterations, settings.max_iterations)
        if not run.sprint_name:
            run.sprint_name = self.sprint.name
        run.transition(RunStatus.RUNNING)
        run.last_message = "Preparing sandbox…"
        run.last_progress_at = utc_now()
        self._save_run()

        name, options = build_agent_options(settings, self.config)
        self.agent = self.agent_factory(name, options)
        self.sandbox_dir = self._resolve_sandbox(run.sandbox_path)

        ui.print_run_header(run.run_id, self.sprint.name or self.sprint.id, run.sandbox_branch,
                            self.agent.name, run.max_iterations)

        if self.workspace_factory is not None:
            self.workspace = self.workspace_factory(self.sandbox_dir)
            self.workspace.prepare(run.run_id, self.sprint, run.sandbox_branch, self._task_scope())

        self.log.write([
            f"Run {run.run_id} started",
            f"Sprint: {self.sprint.name or self.sprint.id}",
            f"Agent: {self.agent.name}",
            f"Sandbox: {self.sandbox_dir}" + (f" (branch {run.sandbox_branch})" if run.sandbox_branch else ""),
            f"Max iterations: {run.max_iterations}",
        ])
        self.log.flush()

    def _save_run(self):
        """
        Persist the run record, keeping fields written by other processes.

        The launcher records the pid and the cancel command stamps
        cancellationRequestedAt after this process has loaded the run, so
        both are taken from the stored copy before the full record is put back.
        """
        run = self.run_record
        stored = self.backend.read_run(run.run_id)
        if stored.pid is not None:
            run.pid = stored.pid
        if not run.cancellation_requested_at:
            run.cancellation_requested_at = stored.cancellation_requested_at
        self.backend.write_run(run)

    def _resolve_sandbox(self, sandbox_path: str) -> Path:
        if not sandbox_path:
            raise ConfigurationError(f"Run {self.run_id} has no sandbox path")
        path = Path(sandbox_path).expanduser()
        if not path.is_absolute():
            base = self.config.project_path if self.config else Path.cwd()
            path = Path(base) / path
        return path.resolve()

    def _task_scope(self) -> Optional[list[str]]:
        # Records without a snapshot get the whole sprint
        return self.run_record.selected_task_ids or None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _loop(self):
        run = self.run_record
        while True:
            if self.backend.check_cancellation(run.run_id):
                self._cancel()
                return

            task = self.sprint.next_task(self._task_scope())
            if task is None:
                self._finish(RunStatus.COMPLETED, RunReason.COMPLETED, "No eligible tasks remain")
                return

            if run.current_iteration >= run.max_iterations:
                self._finish(
                    RunStatus.COMPLETED, RunReason.MAX_ITERATIONS,
                    f"Reached max iterations ({run.max_iterations}) with tasks remaining",
                )
                return

            if self._run_iteration(run.current_iteration + 1, task):
                return

    def _run_iteration(self, iteration: int, task: Task) -> bool:
        """Run one agent invocation on `task`. Returns True when the run is over."""
        run = self.run_record
        ui.print_iteration(iteration, run.max_iterations)
        ui.print_task_start(task.id, task.title, task.description)

        task.start()
        self.backend.write_sprint(self.sprint)

        run.last_task_id = task.id
        run.last_message = f"Iteration {iteration}: running {self.agent.name} on {task.id}"
        run.last_command = self.agent.describe_invocation()
        run.last_command_exit_code = None
        run.last_progress_at = utc_now()
        self._save_run()

        if self.workspace is not None:
            self.workspace.write_plan(self.sprint, self._task_scope())

        self.log.write(f"\n=== Iteration {iteration}/{run.max_iterations}: task {task.id} ===\n")
        result = self.agent.run(AgentContext(
            sandbox_dir=self.sandbox_dir,
            log=self.log,
            iteration=iteration,
            task=task,
        ))
        self.log.flush()

        run.last_command_exit_code = result.exit_code
        run.last_progress_at = utc_now()

        if result.rate_limited:
            return self._halt_on_usage_limit(iteration, task)

        self._record_outcome(iteration, task, result)

        if result.succeeded and has_completion_sentinel(result.output):
            self.log.write("Agent reported that all work is complete.\n")
            self._finish(RunStatus.COMPLETED, RunReason.COMPLETED, "Agent reported all work complete")
            return True
        return False

    def _record_outcome(self, iteration: int, task: Task, result: AgentResult):
        run = self.run_record
        if result.succeeded:
            task.mark_passed()
            ui.print_task_complete(task.id)
            message = f"Iteration {iteration}: task {task.id} done"
        else:
            notes = limit_output(result.output) or f"Agent exited with code {result.exit_code}"
            task.mark_failed(notes)
            ui.print_task_failed(task.id, notes.splitlines()[0] if notes else "")
            message = f"Iteration {iteration}: task {task.id} failed (exit {result.exit_code}), moved to review"
            self.log.write(f"Task {task.id} failed with exit code {result.exit_code}; moving on.\n")

        self.backend.write_sprint(self.sprint)
        run.advance_iteration()
        run.last_message = message
        self._save_run()
        self.log.flush()

    def _halt_on_usage_limit(self, iteration: int, task: Task) -> bool:
        run = self.run_record
        run.advance_iteration()
        ui.print_usage_limit(task.id)
        self.log.write(
            f"Agent hit a usage limit during iteration {iteration} (task {task.id}). "
            f"Halting; retry the run after the limit resets.\n"
        )
        self._finish(
            RunStatus.STOPPED, RunReason.USAGE_LIMIT,
            f"Usage limit reached during iteration {iteration}; retry the run once it resets",
        )
        return True

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _cancel(self):
        run = self.run_record
        if not run.cancellation_requested_at:
            run.cancellation_requested_at = utc_now()
        self.log.write("Cancellation requested; stopping before the next iteration.\n")
        self._finish(RunStatus.CANCELED, RunReason.CANCELED, "Run canceled")

    def _summary(self) -> str:
        run = self.run_record
        scope = set(self._task_scope() or [t.id for t in self.sprint.tasks]) if self.sprint else set()
        tasks = [t for t in self.sprint.tasks if t.id in scope] if self.sprint else []
        passed = sum(1 for t in tasks if t.passes)
        failed = sum(1 for t in tasks if t.status == TaskStatus.REVIEW and not t.passes)

        lines = [
            f"Run {run.run_id} finished with status {run.status.value}"
            + (f" ({run.reason.value})." if run.reason else "."),
            f"Agent: {self.agent.name if self.agent else 'n/a'}.",
            f"Iterations: {run.current_iteration}/{run.max_iterations}. Passed: {passed}, Failed: {failed}.",
        ]
        if self.workspace is not None and run.sandbox_branch and self.workspace.is_git_repo():
            commits = self.workspace.commit_count()
            if commits is not None:
                lines.append(f"Branch {run.sandbox_branch}: {commits} new commit(s).")
        return "\n".join(lines) + "\n"

    def _finish(self, status: RunStatus, reason: RunReason, message: str):
        run = self.run_record
        run.transition(status, reason)
        run.last_message = message
        self.log.write(self._summary())
        self.log.flush()
        self._save_run()
        ui.print_run_finished(status.value, reason.value, run.current_iteration, message)

    def _fail(self, error: Exception):
        run = self.run_record
        run.add_error(str(error))
        if not run.is_terminal:
            run.transition(RunStatus.FAILED, RunReason.ERROR)
        run.last_message = f"Run failed: {error}"
        ui.print_error(f"Run {run.run_id} failed: {error}")

        try:
            self.log.write(f"Run failed: {error}\n")
            self.log.flush()
            self._save_run()
        except BackendError as e:
            self.persist_failed = True
            ui.print_error(f"Could not record the failure for run {run.run_id}: {e}")

        ui.print_run_finished(run.status.value, run.reason.value if run.reason else None,
                              run.current_iteration, run.last_message)
