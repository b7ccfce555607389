"""Core data models for runloop."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import json

import yaml

from .errors import InvalidTransitionError


DEFAULT_MAX_ITERATIONS = 5


def utc_now() -> str:
    """ISO-8601 timestamp in UTC, the format the backend stores."""
    return datetime.now(timezone.utc).isoformat()


class RunStatus(str, Enum):
    QUEUED = "queued"          # Record created, supervisor not consuming work yet
    RUNNING = "running"        # Iteration loop active
    COMPLETED = "completed"    # No eligible work left, or iteration cap reached
    FAILED = "failed"          # Fatal error (backend, configuration, spawn)
    STOPPED = "stopped"        # Halted in a retryable state (usage limit)
    CANCELED = "canceled"      # Operator cancellation observed

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.QUEUED, RunStatus.RUNNING)


class RunReason(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    USAGE_LIMIT = "usage_limit"
    CANCELED = "canceled"
    ERROR = "error"


class ExecutorMode(str, Enum):
    LOCAL = "local"
    DOCKER = "docker"


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


# Selection buckets, highest priority first
SELECTION_ORDER = (TaskStatus.IN_PROGRESS, TaskStatus.TODO, TaskStatus.BACKLOG)


def _coerce_task_status(value) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        return TaskStatus.BACKLOG


@dataclass
class Task:
    id: str
    description: str = ""
    title: str = ""
    status: TaskStatus = TaskStatus.BACKLOG
    passes: bool = False
    steps: list[str] = field(default_factory=list)
    priority: Optional[str] = None
    estimate: Optional[float] = None
    files_touched: list[str] = field(default_factory=list)
    failure_notes: Optional[str] = None
    last_run: Optional[str] = None
    updated_at: Optional[str] = None
    extra: dict = field(default_factory=dict)  # Wire fields we don't model, kept on write-back

    @property
    def is_eligible(self) -> bool:
        """A task can be picked iff it isn't done and hasn't passed acceptance."""
        return self.status != TaskStatus.DONE and not self.passes

    def start(self):
        now = utc_now()
        self.status = TaskStatus.IN_PROGRESS
        self.last_run = now
        self.updated_at = now

    def mark_passed(self):
        self.status = TaskStatus.DONE
        self.passes = True
        self.failure_notes = None
        self.updated_at = utc_now()

    def mark_failed(self, notes: str):
        self.status = TaskStatus.REVIEW
        self.passes = False
        self.failure_notes = notes
        self.updated_at = utc_now()

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "passes": self.passes,
            "steps": self.steps,
            "priority": self.priority,
            "estimate": self.estimate,
            "filesTouched": self.files_touched,
            "failureNotes": self.failure_notes,
            "lastRun": self.last_run,
            "updatedAt": self.updated_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        known = {
            "id", "title", "description", "status", "passes", "steps", "priority",
            "estimate", "filesTouched", "failureNotes", "lastRun", "updatedAt",
        }
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=_coerce_task_status(data.get("status", "backlog")),
            passes=data.get("passes") is True,
            steps=list(data.get("steps") or []),
            priority=data.get("priority"),
            estimate=data.get("estimate"),
            files_touched=list(data.get("filesTouched") or []),
            failure_notes=data.get("failureNotes"),
            last_run=data.get("lastRun"),
            updated_at=data.get("updatedAt"),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class Sprint:
    """A named collection of tasks (called a "board" by older clients)."""
    id: str
    name: str = ""
    goal: str = ""
    tasks: list[Task] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    archived_at: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @property
    def is_archived(self) -> bool:
        return bool(self.archived_at)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def eligible_tasks(self, task_ids: Optional[list[str]] = None) -> list[Task]:
        """Eligible tasks, optionally restricted to a set of ids."""
        allowed = set(task_ids) if task_ids else None
        return [
            t for t in self.tasks
            if t.is_eligible and (allowed is None or t.id in allowed)
        ]

    def next_task(self, task_ids: Optional[list[str]] = None) -> Optional[Task]:
        """
        Pick the next task to work on.

        in_progress first, then todo, then backlog. Within a bucket the first
        task in sprint order wins; no other field is considered.
        """
        candidates = self.eligible_tasks(task_ids)
        for status in SELECTION_ORDER:
            for task in candidates:
                if task.status == status:
                    return task
        return None

    def selectable_task_ids(self) -> list[str]:
        """Snapshot of eligible task ids in the order they would be picked."""
        candidates = self.eligible_tasks()
        ordered = []
        for status in SELECTION_ORDER:
            ordered.extend(t.id for t in candidates if t.status == status)
        return ordered

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "archivedAt": self.archived_at,
            "tasks": [t.to_dict() for t in self.tasks],
        })
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Sprint":
        known = {"id", "name", "goal", "createdAt", "updatedAt", "archivedAt", "tasks"}
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            goal=data.get("goal") or "",
            tasks=[Task.from_dict(t) for t in data.get("tasks") or []],
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            archived_at=data.get("archivedAt"),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class AgentSettings:
    name: Optional[str] = None
    bin: Optional[str] = None
    model: Optional[str] = None
    permission_mode: Optional[str] = None
    extra_args: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentSettings":
        extra_args = data.get("extraArgs") or []
        if isinstance(extra_args, str):
            extra_args = extra_args.split()
        return cls(
            name=data.get("name"),
            bin=data.get("bin"),
            model=data.get("model"),
            permission_mode=data.get("permissionMode"),
            extra_args=[str(a) for a in extra_args],
        )


@dataclass
class ProjectSettings:
    """The automation slice of a project's settings."""
    max_iterations: Optional[int] = None
    agent: AgentSettings = field(default_factory=AgentSettings)
    coding_style: str = ""
    rate_limit_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectSettings":
        automation = data.get("automation") or {}
        agent = automation.get("agent") or {}
        if isinstance(agent, str):
            agent = {"name": agent}
        return cls(
            max_iterations=automation.get("maxIterations"),
            agent=AgentSettings.from_dict(agent),
            coding_style=automation.get("codingStyle") or data.get("codingStyle") or "",
            rate_limit_patterns=list(automation.get("rateLimitPatterns") or []),
        )


def effective_max_iterations(requested: Optional[int], settings_max: Optional[int]) -> int:
    """Explicit request, else the project setting, else the default."""
    for value in (requested, settings_max):
        if value and value > 0:
            return int(value)
    return DEFAULT_MAX_ITERATIONS


@dataclass
class Run:
    run_id: str
    project_id: str
    sprint_id: str
    max_iterations: Optional[int] = DEFAULT_MAX_ITERATIONS
    status: RunStatus = RunStatus.QUEUED
    reason: Optional[RunReason] = None
    sprint_name: Optional[str] = None
    current_iteration: int = 0
    executor_mode: ExecutorMode = ExecutorMode.LOCAL
    sandbox_path: str = ""
    sandbox_branch: Optional[str] = None
    selected_task_ids: list[str] = field(default_factory=list)
    last_task_id: Optional[str] = None
    last_message: Optional[str] = None
    last_command: Optional[str] = None
    last_command_exit_code: Optional[int] = None
    errors: list[str] = field(default_factory=list)
    pid: Optional[int] = None
    cancellation_requested_at: Optional[str] = None
    triggered_by_id: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_progress_at: Optional[str] = None

    def __post_init__(self):
        # Ordered set semantics
        self.selected_task_ids = list(dict.fromkeys(self.selected_task_ids))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: RunStatus, reason: Optional[RunReason] = None):
        """Move to a new status. Terminal runs never change status again."""
        if status == self.status and reason in (None, self.reason):
            return
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Run {self.run_id} is {self.status.value}; cannot move to {status.value}"
            )
        if status == RunStatus.QUEUED:
            raise InvalidTransitionError(f"Run {self.run_id} cannot return to queued")
        self.status = status
        if reason is not None:
            self.reason = reason
        if status == RunStatus.RUNNING and not self.started_at:
            self.started_at = utc_now()
        if status.is_terminal:
            self.finished_at = utc_now()

    def advance_iteration(self):
        if self.max_iterations is not None and self.current_iteration >= self.max_iterations:
            raise InvalidTransitionError(
                f"Run {self.run_id} already at max iterations ({self.max_iterations})"
            )
        self.current_iteration += 1

    def add_error(self, message: str):
        self.errors.append(message)

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "projectId": self.project_id,
            "sprintId": self.sprint_id,
            "sprintName": self.sprint_name,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "maxIterations": self.max_iterations,
            "currentIteration": self.current_iteration,
            "executorMode": self.executor_mode.value,
            "sandboxPath": self.sandbox_path,
            "sandboxBranch": self.sandbox_branch,
            "selectedTaskIds": self.selected_task_ids,
            "lastTaskId": self.last_task_id,
            "lastMessage": self.last_message,
            "lastCommand": self.last_command,
            "lastCommandExitCode": self.last_command_exit_code,
            "errors": self.errors,
            "pid": self.pid,
            "cancellationRequestedAt": self.cancellation_requested_at,
            "triggeredById": self.triggered_by_id,
            "retryOf": self.retry_of,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "lastProgressAt": self.last_progress_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Run":
        return cls(
            run_id=data["runId"],
            project_id=data.get("projectId", ""),
            sprint_id=data.get("sprintId") or data.get("boardId", ""),
            sprint_name=data.get("sprintName"),
            status=RunStatus(data.get("status", "queued")),
            reason=RunReason(data["reason"]) if data.get("reason") else None,
            max_iterations=data.get("maxIterations"),
            current_iteration=data.get("currentIteration", 0),
            executor_mode=ExecutorMode(data.get("executorMode") or "local"),
            sandbox_path=data.get("sandboxPath", ""),
            sandbox_branch=data.get("sandboxBranch"),
            selected_task_ids=list(data.get("selectedTaskIds") or []),
            last_task_id=data.get("lastTaskId"),
            last_message=data.get("lastMessage"),
            last_command=data.get("lastCommand"),
            last_command_exit_code=data.get("lastCommandExitCode"),
            errors=list(data.get("errors") or []),
            pid=data.get("pid"),
            cancellation_requested_at=data.get("cancellationRequestedAt"),
            triggered_by_id=data.get("triggeredById"),
            retry_of=data.get("retryOf"),
            created_at=data.get("createdAt") or utc_now(),
            started_at=data.get("startedAt"),
            finished_at=data.get("finishedAt"),
            last_progress_at=data.get("lastProgressAt"),
        )

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False, allow_unicode=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)
