"""Configuration loading for the run loop."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .models import ExecutorMode
from . import ui


DEFAULT_AGENT = "claude"
DEFAULT_PERMISSION_MODE = "acceptEdits"
DEFAULT_HTTP_TIMEOUT = 30.0


@dataclass
class RunLoopConfig:
    """Process configuration loaded from environment."""

    api_url: str
    project_id: str
    auth_token: Optional[str] = None
    executor_mode: ExecutorMode = ExecutorMode.LOCAL
    agent_name: str = DEFAULT_AGENT
    agent_bin: Optional[str] = None
    agent_extra_args: list[str] = field(default_factory=list)
    permission_mode: str = DEFAULT_PERMISSION_MODE
    rate_limit_patterns: list[str] = field(default_factory=list)
    project_path: Path = field(default_factory=Path.cwd)
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    def runner_env(self) -> dict[str, str]:
        """Variables a spawned supervisor needs to rebuild this config."""
        env = {
            "RUN_LOOP_API_URL": self.api_url,
            "RUN_LOOP_PROJECT_ID": self.project_id,
            "RUN_LOOP_EXECUTOR": self.executor_mode.value,
            "RUN_LOOP_PROJECT_PATH": str(self.project_path),
        }
        if self.auth_token:
            env["RUN_LOOP_AUTH_TOKEN"] = self.auth_token
        return env


def _parse_json_list(name: str) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None
    if not isinstance(parsed, list):
        ui.print_warning(f'{name} must be a JSON array, e.g. ["--foo","bar"]; ignoring it')
        return []
    return [str(value) for value in parsed]


def load_config() -> RunLoopConfig:
    """
    Load configuration from environment variables (and a .env file if present).

    Raises:
        ConfigurationError: If required variables are missing or invalid.
    """
    load_dotenv()

    api_url = os.environ.get("RUN_LOOP_API_URL", "").strip()
    project_id = os.environ.get("RUN_LOOP_PROJECT_ID", "").strip()

    missing = []
    if not api_url:
        missing.append("RUN_LOOP_API_URL")
    if not project_id:
        missing.append("RUN_LOOP_PROJECT_ID")
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}\n"
            f"Set them in your environment or in a .env file."
        )

    executor = os.environ.get("RUN_LOOP_EXECUTOR", "local").strip().lower()
    executor_mode = ExecutorMode.DOCKER if executor == "docker" else ExecutorMode.LOCAL

    timeout_raw = os.environ.get("RUN_LOOP_HTTP_TIMEOUT")
    try:
        http_timeout = float(timeout_raw) if timeout_raw else DEFAULT_HTTP_TIMEOUT
    except ValueError:
        raise ConfigurationError(f"RUN_LOOP_HTTP_TIMEOUT must be a number, got {timeout_raw!r}")

    project_path = os.environ.get("RUN_LOOP_PROJECT_PATH")

    return RunLoopConfig(
        api_url=api_url.rstrip("/"),
        project_id=project_id,
        auth_token=os.environ.get("RUN_LOOP_AUTH_TOKEN") or None,
        executor_mode=executor_mode,
        agent_name=(os.environ.get("RUN_LOOP_AGENT") or DEFAULT_AGENT).lower(),
        agent_bin=os.environ.get("RUN_LOOP_AGENT_BIN") or None,
        agent_extra_args=_parse_json_list("RUN_LOOP_AGENT_EXTRA_ARGS"),
        permission_mode=os.environ.get("RUN_LOOP_CLAUDE_PERMISSION_MODE") or DEFAULT_PERMISSION_MODE,
        rate_limit_patterns=_parse_json_list("RUN_LOOP_RATE_LIMIT_PATTERNS"),
        project_path=Path(project_path).resolve() if project_path else Path.cwd(),
        http_timeout=http_timeout,
    )
