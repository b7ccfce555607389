"""
HTTP client for the project backend.

The supervisor persists everything through this client: run records, sprint
documents, settings, cancellation checks and log lines. Every method issues
exactly one request and raises BackendError on anything other than 2xx.
"""

from typing import Optional

import httpx

from .errors import BackendError, ClientClosedError, ConfigurationError
from .models import ProjectSettings, Run, Sprint


class BackendClient:
    """HTTP API client scoped to one project."""

    def __init__(
        self,
        base_url: str,
        project_id: str,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. "http://localhost:3000/api"
            project_id: Project every request is scoped to
            auth_token: Optional bearer token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not base_url:
            raise ConfigurationError("BackendClient requires a base URL (set RUN_LOOP_API_URL)")
        if not project_id:
            raise ConfigurationError("BackendClient requires a project id (set RUN_LOOP_PROJECT_ID)")

        self.base_url = base_url.rstrip("/")
        self.project_id = project_id

        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._closed = False

    @classmethod
    def from_config(cls, config) -> "BackendClient":
        return cls(
            config.api_url,
            config.project_id,
            auth_token=config.auth_token,
            timeout=config.http_timeout,
        )

    def close(self):
        if not self._closed:
            self._client.close()
            self._closed = True

    def __enter__(self) -> "BackendClient":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        operation: str,
        resource: str,
        method: str,
        path: str,
        scoped: bool = True,
        json: Optional[dict] = None,
    ) -> httpx.Response:
        if self._closed:
            raise ClientClosedError(operation)

        params = {"projectId": self.project_id} if scoped else None
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.RequestError as e:
            raise BackendError(operation, resource, None, str(e)) from e

        if not response.is_success:
            raise BackendError(operation, resource, response.status_code, response.text)
        return response

    @staticmethod
    def _payload(response: httpx.Response, key: str, operation: str, resource: str) -> dict:
        """Unwrap {key: {...}} responses; accept a bare object too."""
        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(operation, resource, response.status_code, "response is not JSON") from e
        if isinstance(data, dict) and isinstance(data.get(key), dict):
            return data[key]
        if not isinstance(data, dict):
            raise BackendError(operation, resource, response.status_code, f"unexpected payload: {data!r}"[:200])
        return data

    @staticmethod
    def _parse(factory, data, response: httpx.Response, operation: str, resource: str):
        """Build a model from a payload; malformed records surface as BackendError."""
        try:
            return factory(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise BackendError(operation, resource, response.status_code, f"malformed payload: {e!r}") from e

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def read_run(self, run_id: str) -> Run:
        resource = f"run {run_id}"
        response = self._request("read_run", resource, "GET", f"/runs/{run_id}")
        data = self._payload(response, "run", "read_run", resource)
        return self._parse(Run.from_dict, data, response, "read_run", resource)

    def write_run(self, run: Run) -> None:
        self._request(
            "write_run", f"run {run.run_id}", "PUT", f"/runs/{run.run_id}", json=run.to_dict()
        )

    def check_cancellation(self, run_id: str) -> bool:
        response = self._request(
            "check_cancellation", f"run {run_id}", "GET", f"/runs/{run_id}/cancellation"
        )
        data = self._payload(response, "cancellation", "check_cancellation", f"run {run_id}")
        return data.get("canceled") is True

    def request_cancellation(self, run_id: str) -> None:
        """Raise the cancellation flag the supervisor polls between iterations."""
        self._request(
            "request_cancellation", f"run {run_id}", "POST", f"/runs/{run_id}/cancellation"
        )

    def append_log(self, run_id: str, entry: str) -> None:
        self._request(
            "append_log", f"run {run_id}", "POST", f"/runs/{run_id}/logs", json={"entry": entry}
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def read_settings(self) -> ProjectSettings:
        resource = f"project {self.project_id}"
        response = self._request(
            "read_settings", resource, "GET", f"/projects/{self.project_id}/settings", scoped=False
        )
        data = self._payload(response, "settings", "read_settings", resource)
        return self._parse(ProjectSettings.from_dict, data, response, "read_settings", resource)

    # ------------------------------------------------------------------
    # Sprints ("boards" for older callers)
    # ------------------------------------------------------------------

    def read_sprint(self, sprint_id: str) -> Sprint:
        resource = f"sprint {sprint_id}"
        response = self._request("read_sprint", resource, "GET", f"/sprints/{sprint_id}")
        data = self._payload(response, "sprint", "read_sprint", resource)
        return self._parse(Sprint.from_dict, data, response, "read_sprint", resource)

    def write_sprint(self, sprint: Sprint) -> None:
        self._request(
            "write_sprint", f"sprint {sprint.id}", "PUT", f"/sprints/{sprint.id}", json=sprint.to_dict()
        )

    def list_sprints(self) -> list[Sprint]:
        resource = f"project {self.project_id}"
        response = self._request(
            "list_sprints", resource, "GET", f"/projects/{self.project_id}/sprints", scoped=False
        )
        try:
            data = response.json()
        except ValueError as e:
            raise BackendError("list_sprints", resource, response.status_code, "response is not JSON") from e
        items = data.get("sprints", []) if isinstance(data, dict) else data
        return self._parse(
            lambda rows: [Sprint.from_dict(item) for item in rows or []],
            items, response, "list_sprints", resource,
        )

    def read_board(self, board_id: str) -> Sprint:
        """Deprecated alias of read_sprint."""
        return self.read_sprint(board_id)

    def write_board(self, board: Sprint) -> None:
        """Deprecated alias of write_sprint."""
        self.write_sprint(board)
