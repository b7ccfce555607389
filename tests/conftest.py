"""Shared fixtures: an in-memory backend served through httpx.MockTransport."""

import json
import re
from collections import defaultdict

import httpx
import pytest

from runloop.backend import BackendClient


BASE_URL = "http://backend.test/api"
PROJECT_ID = "proj-1"


class FakeBackend:
    """Minimal stand-in for the project API, enough for the run loop."""

    def __init__(self, project_id: str = PROJECT_ID):
        self.project_id = project_id
        self.runs = {}
        self.sprints = {}
        self.settings = {"automation": {}}
        self.logs = defaultdict(list)
        self.canceled = set()
        self.requests = []
        self.failures = {}

    def fail(self, method: str, path: str, status: int = 500):
        """Make every `method` request to `path` answer with `status`."""
        self.failures[(method, path)] = status

    def client(self) -> BackendClient:
        return BackendClient(BASE_URL, self.project_id, transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        method = request.method
        self.requests.append((method, path, dict(request.url.params)))

        status = self.failures.get((method, path))
        if status:
            return httpx.Response(status, text="backend exploded")

        body = json.loads(request.content) if request.content else None

        m = re.fullmatch(r"/runs/([^/]+)", path)
        if m:
            run_id = m.group(1)
            if method == "GET":
                if run_id not in self.runs:
                    return httpx.Response(404, json={"error": "Run not found"})
                return httpx.Response(200, json={"run": self.runs[run_id]})
            if method == "PUT":
                self.runs[run_id] = body
                return httpx.Response(200, json={"run": body})

        m = re.fullmatch(r"/runs/([^/]+)/cancellation", path)
        if m:
            run_id = m.group(1)
            if method == "GET":
                return httpx.Response(200, json={"cancellation": {"canceled": run_id in self.canceled}})
            if method == "POST":
                self.canceled.add(run_id)
                return httpx.Response(200, json={"ok": True})

        m = re.fullmatch(r"/runs/([^/]+)/logs", path)
        if m and method == "POST":
            self.logs[m.group(1)].append(body["entry"])
            return httpx.Response(201, json={"ok": True})

        m = re.fullmatch(r"/sprints/([^/]+)", path)
        if m:
            sprint_id = m.group(1)
            if method == "GET":
                if sprint_id not in self.sprints:
                    return httpx.Response(404, json={"error": "Sprint not found"})
                return httpx.Response(200, json={"sprint": self.sprints[sprint_id]})
            if method == "PUT":
                self.sprints[sprint_id] = body
                return httpx.Response(200, json={"sprint": body})

        if path == f"/projects/{self.project_id}/settings" and method == "GET":
            return httpx.Response(200, json={"settings": self.settings})

        if path == f"/projects/{self.project_id}/sprints" and method == "GET":
            return httpx.Response(200, json={"sprints": list(self.sprints.values())})

        return httpx.Response(404, json={"error": f"no route for {method} {path}"})

    # Helpers

    def add_sprint(self, sprint_id: str = "s1", tasks=None, **fields) -> dict:
        data = {"id": sprint_id, "name": f"Sprint {sprint_id}", "tasks": tasks or []}
        data.update(fields)
        self.sprints[sprint_id] = data
        return data

    def add_run(self, run_id: str = "run-1", sprint_id: str = "s1", **fields) -> dict:
        data = {
            "runId": run_id,
            "projectId": self.project_id,
            "sprintId": sprint_id,
            "status": "queued",
            "maxIterations": 5,
            "currentIteration": 0,
            "executorMode": "local",
            "sandboxPath": "/tmp",
            "selectedTaskIds": [],
            "errors": [],
        }
        data.update(fields)
        self.runs[run_id] = data
        return data

    def task(self, sprint_id: str, task_id: str) -> dict:
        for task in self.sprints[sprint_id]["tasks"]:
            if task["id"] == task_id:
                return task
        raise KeyError(task_id)

    def log_text(self, run_id: str) -> str:
        return "".join(self.logs[run_id])


def make_task(task_id: str, status: str = "todo", passes: bool = False, **fields) -> dict:
    data = {"id": task_id, "title": f"Task {task_id}", "description": "", "status": status, "passes": passes}
    data.update(fields)
    return data


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    with backend.client() as c:
        yield c


@pytest.fixture
def task_factory():
    return make_task
