"""
Coding agent abstraction for runloop.

Each backend wraps an external coding agent (Claude through its SDK, OpenCode
through its CLI) behind one contract: run(context) -> AgentResult. All file
changes happen inside the external agent; adapters only drive it and capture
what it says.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional
import asyncio
import os
import re
import subprocess
import threading

from .errors import AgentInvocationError, BackendError, ConfigurationError, UnsupportedAgentError
from .models import ProjectSettings, Task
from .prompts import get_loop_prompt


DEFAULT_TIMEOUT = 30 * 60  # seconds, subprocess agents only

# Terminal colors for stream markers in the run log
CYAN = "\033[36m"
GREEN = "\033[32m"
RED = "\033[91m"
RESET = "\033[0m"

# Usage-limit vocabulary. Matching is heuristic: a vendor whose throttling
# message uses other words will be reported as a generic failure (exit 1).
DEFAULT_RATE_LIMIT_PATTERNS = [
    r"usage limit",
    r"rate exceeded",
    r"too many requests",
    r"\b429\b",
    r"\bresets\s+(?:at\s+)?\d{1,2}(?::\d{2})?\s*(?:am|pm)?\b",
]

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE_LIMIT = 2

PERMISSION_MODES = {"default", "acceptEdits", "plan", "bypassPermissions"}


def compile_rate_limit_patterns(extra: Optional[list[str]] = None) -> list[re.Pattern]:
    """Default patterns plus extras. Extras that aren't valid regexes match literally."""
    compiled = []
    for pattern in DEFAULT_RATE_LIMIT_PATTERNS + list(extra or []):
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error:
            compiled.append(re.compile(re.escape(pattern), re.IGNORECASE))
    return compiled


def is_rate_limited(text: str, patterns: Optional[list[re.Pattern]] = None) -> bool:
    if not text:
        return False
    patterns = patterns if patterns is not None else compile_rate_limit_patterns()
    return any(p.search(text) for p in patterns)


def classify_failure(message: str, transcript: str = "", patterns: Optional[list[re.Pattern]] = None) -> int:
    """
    Map a failed invocation to an exit code.

    Returns 2 when the error message or transcript looks like provider
    throttling, otherwise 1.
    """
    if is_rate_limited(message, patterns) or is_rate_limited(transcript, patterns):
        return EXIT_USAGE_LIMIT
    return EXIT_FAILURE


@dataclass
class AgentResult:
    output: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_SUCCESS

    @property
    def rate_limited(self) -> bool:
        return self.exit_code == EXIT_USAGE_LIMIT


@dataclass
class AgentContext:
    """
    Per-iteration input for an agent.

    Attributes:
        sandbox_dir: Absolute path of the working copy the agent edits
        log: Sink with write(text) and flush(); receives output as it arrives
        iteration: 1-based iteration number, for log annotation
        task: Task the supervisor selected, if any
    """
    sandbox_dir: Path
    log: object
    iteration: int
    task: Optional[Task] = None


@dataclass
class AgentOptions:
    bin: str = ""
    model: Optional[str] = None
    extra_args: list[str] = field(default_factory=list)
    coding_style: str = ""
    permission_mode: str = "acceptEdits"
    timeout: int = DEFAULT_TIMEOUT
    rate_limit_patterns: list[str] = field(default_factory=list)


class Agent(ABC):
    """Abstract base class for coding agents."""

    name = ""

    def __init__(self, options: AgentOptions):
        self.bin = options.bin or self.name
        self.model = options.model
        self.extra_args = list(options.extra_args)
        self.coding_style = options.coding_style
        self.timeout = options.timeout
        self.patterns = compile_rate_limit_patterns(options.rate_limit_patterns)

    def build_prompt(self, task: Optional[Task] = None) -> str:
        return get_loop_prompt(self.coding_style, task)

    @abstractmethod
    def describe_invocation(self) -> str:
        """Human-readable command line with the prompt left out."""
        pass

    @abstractmethod
    def _invoke(self, context: AgentContext, transcript: list[str]) -> AgentResult:
        """
        Drive the external agent once.

        Implementations append captured text to `transcript` as they go so a
        failure part-way through can still be classified.
        """
        pass

    def run(self, context: AgentContext) -> AgentResult:
        """
        Run one iteration of the agent in the sandbox.

        Never raises for agent-side problems: they become exit code 1, or 2
        when the failure looks like a usage limit. Errors from the log sink's
        backend are not agent problems and propagate.
        """
        transcript: list[str] = []
        try:
            return self._invoke(context, transcript)
        except BackendError:
            raise
        except Exception as e:
            captured = "".join(transcript)
            if isinstance(e, AgentInvocationError) and e.transcript:
                captured = e.transcript
            exit_code = classify_failure(str(e), captured, self.patterns)
            label = "usage limit" if exit_code == EXIT_USAGE_LIMIT else "error"
            context.log.write(f"{RED}[{label}] {self.name} failed: {e}{RESET}\n")
            context.log.flush()
            output = f"{captured}\n{e}".strip()
            return AgentResult(output=output, exit_code=exit_code)


class ClaudeAgent(Agent):
    """Claude through claude-agent-sdk, streaming every message into the log."""

    name = "claude"

    def __init__(self, options: AgentOptions):
        super().__init__(options)
        self.permission_mode = options.permission_mode or "acceptEdits"
        if self.permission_mode not in PERMISSION_MODES:
            raise ConfigurationError(
                f"Unknown permission mode {self.permission_mode!r}. "
                f"Use one of: {', '.join(sorted(PERMISSION_MODES))}"
            )

    def sdk_extra_args(self) -> dict[str, Optional[str]]:
        """Turn ["--flag", "value", "--switch"] into the SDK's {flag: value, switch: None}."""
        result = {}
        args = self.extra_args
        i = 0
        while i < len(args):
            arg = args[i]
            if arg.startswith("--"):
                value = None
                if i + 1 < len(args) and not args[i + 1].startswith("-"):
                    value = args[i + 1]
                    i += 1
                if arg != "--model":
                    result[arg[2:]] = value
            i += 1
        return result

    def describe_invocation(self) -> str:
        parts = [self.bin, *self.extra_args]
        if self.model and "--model" not in self.extra_args:
            parts += ["--model", self.model]
        parts += ["--permission-mode", self.permission_mode, "[prompt omitted]"]
        return " ".join(parts)

    def _invoke(self, context: AgentContext, transcript: list[str]) -> AgentResult:
        prompt = self.build_prompt(context.task)
        context.log.write(
            f"Running claude (iteration {context.iteration})\n"
            f"Command: {self.describe_invocation()}\n"
        )
        context.log.flush()

        asyncio.run(self._stream(prompt, context, transcript))

        output = "".join(transcript).strip()
        context.log.write(f"\nClaude finished. Output length: {len(output)}\n")
        context.log.flush()
        return AgentResult(output=output, exit_code=EXIT_SUCCESS)

    async def _stream(self, prompt: str, context: AgentContext, transcript: list[str]):
        from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

        options = ClaudeAgentOptions(
            cwd=str(context.sandbox_dir),
            permission_mode=self.permission_mode,
            extra_args=self.sdk_extra_args(),
        )
        if self.model:
            options.model = self.model
        if self.bin and self.bin != self.name:
            options.cli_path = self.bin

        error = None
        async with ClaudeSDKClient(options=options) as client:
            await client.query(prompt)
            async for message in client.receive_response():
                error = self.handle_message(message, context.log, transcript) or error

        if error:
            raise AgentInvocationError(error, transcript="".join(transcript))

    def handle_message(self, message, log, transcript: list[str]) -> Optional[str]:
        """
        Render one streamed message into the log.

        Returns an error description when the message reports a failed result.
        """
        msg_type = type(message).__name__

        if msg_type == "AssistantMessage":
            for block in getattr(message, "content", []) or []:
                block_type = type(block).__name__
                if block_type == "TextBlock":
                    text = block.text
                    transcript.append(text)
                    log.write(text if text.endswith("\n") else text + "\n")
                elif block_type == "ToolUseBlock":
                    detail = _summarize_tool_input(getattr(block, "input", None))
                    log.write(f"{CYAN}[tool] {block.name}{RESET}{detail}\n")
                    log.flush()

        elif msg_type == "ResultMessage":
            result_text = getattr(message, "result", None) or ""
            if getattr(message, "is_error", False):
                log.write(f"{RED}[error] {result_text or message.subtype}{RESET}\n")
                log.flush()
                return result_text or f"Claude reported {message.subtype}"
            duration = (getattr(message, "duration_ms", 0) or 0) / 1000
            log.write(f"{GREEN}[result] {message.subtype} in {duration:.1f}s{RESET}\n")
            log.flush()

        return None


def _summarize_tool_input(tool_input) -> str:
    if not isinstance(tool_input, dict):
        return ""
    for key in ("file_path", "path", "command", "pattern", "url"):
        if tool_input.get(key):
            value = str(tool_input[key]).replace("\n", " ")
            return f" {value[:120]}"
    return ""


class OpenCodeAgent(Agent):
    """OpenCode CLI run as a subprocess with a wall-clock timeout."""

    name = "opencode"

    def build_args(self, prompt: str) -> list[str]:
        args = ["run"]
        if self.model and "--model" not in self.extra_args:
            args += ["--model", self.model]
        args += self.extra_args
        args.append(prompt)
        return args

    def describe_invocation(self) -> str:
        args = self.build_args("[prompt omitted]")
        return " ".join([self.bin, *args])

    def _invoke(self, context: AgentContext, transcript: list[str]) -> AgentResult:
        prompt = self.build_prompt(context.task)
        cmd = [self.bin, *self.build_args(prompt)]
        context.log.write(
            f"Running opencode (iteration {context.iteration})\n"
            f"Command: {self.describe_invocation()}\n"
        )
        context.log.flush()

        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            cwd=str(context.sandbox_dir),
            env=os.environ.copy(),
            bufsize=1,
        )

        timed_out = threading.Event()

        def kill_on_timeout():
            timed_out.set()
            process.kill()

        timer = threading.Timer(self.timeout, kill_on_timeout)
        timer.start()
        try:
            for line in process.stdout:
                transcript.append(line)
                context.log.write(line)
            process.wait()
        finally:
            timer.cancel()
            process.stdout.close()
            if process.poll() is None:
                process.kill()
                process.wait()

        output = "".join(transcript).strip()
        if timed_out.is_set():
            raise AgentInvocationError(
                f"{self.bin} timed out after {self.timeout}s", transcript=output
            )

        # The declared exit code is authoritative; output is not inspected
        exit_code = process.returncode if process.returncode is not None else EXIT_SUCCESS

        context.log.write(f"opencode exited with code {exit_code}\n")
        context.log.flush()
        return AgentResult(output=output, exit_code=exit_code)


class AgentName(str, Enum):
    CLAUDE = "claude"
    OPENCODE = "opencode"


AGENTS = {
    AgentName.CLAUDE: ClaudeAgent,
    AgentName.OPENCODE: OpenCodeAgent,
}


def resolve_agent_name(name: Optional[str]) -> AgentName:
    """Validate an agent name (case-insensitive)."""
    normalized = (name or "").strip().lower()
    try:
        return AgentName(normalized)
    except ValueError:
        supported = ", ".join(a.value for a in AgentName)
        raise UnsupportedAgentError(f'Unsupported agent "{name}". Use one of: {supported}.')


def create_agent(name: str, options: AgentOptions) -> Agent:
    """
    Create an agent by name.

    Raises:
        UnsupportedAgentError: If the name isn't a known agent
    """
    return AGENTS[resolve_agent_name(name)](options)


def build_agent_options(settings: ProjectSettings, config=None) -> tuple[str, AgentOptions]:
    """
    Combine project settings with process configuration.

    Project settings win; the environment (RunLoopConfig) fills the gaps.
    """
    agent = settings.agent
    name = agent.name or (config.agent_name if config else None) or AgentName.CLAUDE.value
    options = AgentOptions(
        bin=agent.bin or (config.agent_bin if config else None) or "",
        model=agent.model,
        extra_args=agent.extra_args or (list(config.agent_extra_args) if config else []),
        coding_style=settings.coding_style,
        permission_mode=agent.permission_mode or (config.permission_mode if config else "acceptEdits"),
        rate_limit_patterns=settings.rate_limit_patterns + (list(config.rate_limit_patterns) if config else []),
    )
    return name, options
