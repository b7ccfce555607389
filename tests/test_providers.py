"""Tests for the coding agent abstraction."""

import io
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from runloop.config import RunLoopConfig
from runloop.errors import AgentInvocationError, BackendError, ConfigurationError, UnsupportedAgentError
from runloop.models import ProjectSettings, Task
from runloop.prompts import COMPLETION_SENTINEL, get_loop_prompt, has_completion_sentinel
from runloop.providers import (
    EXIT_FAILURE, EXIT_SUCCESS, EXIT_USAGE_LIMIT, AgentContext, AgentOptions,
    ClaudeAgent, OpenCodeAgent, build_agent_options, classify_failure,
    compile_rate_limit_patterns, create_agent,
)


class ListLog:
    """Log sink that keeps everything in memory."""

    def __init__(self):
        self.chunks = []
        self.flushes = 0

    def write(self, text):
        self.chunks.append(text)

    def flush(self):
        self.flushes += 1

    @property
    def text(self):
        return "".join(self.chunks)


def make_context(tmp_path, task=None):
    return AgentContext(sandbox_dir=tmp_path, log=ListLog(), iteration=1, task=task)


# ============================================================================
# Factory
# ============================================================================

def test_create_agent_by_name():
    assert isinstance(create_agent("claude", AgentOptions()), ClaudeAgent)
    assert isinstance(create_agent("OpenCode", AgentOptions()), OpenCodeAgent)


def test_create_agent_rejects_unknown_name():
    with pytest.raises(UnsupportedAgentError) as exc:
        create_agent("gpt-engineer", AgentOptions())
    assert 'Unsupported agent "gpt-engineer"' in str(exc.value)
    assert "claude" in str(exc.value) and "opencode" in str(exc.value)


def test_unknown_agent_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        create_agent("", AgentOptions())


def test_claude_rejects_unknown_permission_mode():
    with pytest.raises(ConfigurationError):
        ClaudeAgent(AgentOptions(permission_mode="yolo"))


def test_build_agent_options_prefers_project_settings():
    config = RunLoopConfig(
        api_url="http://x", project_id="p", agent_name="opencode",
        agent_extra_args=["--env-flag"], rate_limit_patterns=["env quota"],
    )
    settings = ProjectSettings.from_dict({
        "automation": {
            "agent": {"name": "claude", "model": "sonnet"},
            "codingStyle": "small functions",
            "rateLimitPatterns": ["project quota"],
        }
    })
    name, options = build_agent_options(settings, config)
    assert name == "claude"
    assert options.model == "sonnet"
    assert options.extra_args == ["--env-flag"]
    assert options.coding_style == "small functions"
    assert options.rate_limit_patterns == ["project quota", "env quota"]


def test_build_agent_options_falls_back_to_config_then_claude():
    config = RunLoopConfig(api_url="http://x", project_id="p", agent_name="opencode")
    assert build_agent_options(ProjectSettings(), config)[0] == "opencode"
    assert build_agent_options(ProjectSettings())[0] == "claude"


# ============================================================================
# Classification
# ============================================================================

@pytest.mark.parametrize("message", [
    "Rate Exceeded",
    "HTTP 429 from provider",
    "You've hit your usage limit",
    "Limit reached, resets 3am",
    "Too Many Requests",
])
def test_rate_limit_messages_classify_as_usage_limit(message):
    assert classify_failure(message) == EXIT_USAGE_LIMIT


@pytest.mark.parametrize("message", [
    "SyntaxError: unexpected token",
    "connection refused on port 4290",
    "",
])
def test_other_failures_classify_as_generic(message):
    assert classify_failure(message) == EXIT_FAILURE


def test_transcript_is_checked_too():
    assert classify_failure("process exited", "...\nRate exceeded, try later\n") == EXIT_USAGE_LIMIT


def test_extra_patterns_extend_the_defaults():
    patterns = compile_rate_limit_patterns(["quota exhausted", "[unbalanced"])
    assert classify_failure("Quota exhausted for today", patterns=patterns) == EXIT_USAGE_LIMIT
    assert classify_failure("saw [unbalanced bracket", patterns=patterns) == EXIT_USAGE_LIMIT
    assert classify_failure("usage limit", patterns=patterns) == EXIT_USAGE_LIMIT


# ============================================================================
# Prompt
# ============================================================================

def test_prompt_contains_sentinel_and_task_focus():
    task = Task(id="t1", title="Add login", steps=["form renders", "submit works"], failure_notes="flaky test")
    prompt = get_loop_prompt("use tabs", task)
    assert COMPLETION_SENTINEL in prompt
    assert "id: t1" in prompt
    assert "2. submit works" in prompt
    assert "previous failure:\nflaky test" in prompt
    assert "<coding-style>\nuse tabs\n</coding-style>" in prompt


def test_has_completion_sentinel():
    assert has_completion_sentinel(f"all done {COMPLETION_SENTINEL}")
    assert not has_completion_sentinel("all done")
    assert not has_completion_sentinel("")


# ============================================================================
# Claude (SDK streaming)
# ============================================================================

# Stand-ins named like the SDK's message classes; dispatch is by class name
class TextBlock:
    def __init__(self, text):
        self.text = text


class ToolUseBlock:
    def __init__(self, name, input):
        self.name = name
        self.input = input


class AssistantMessage:
    def __init__(self, content):
        self.content = content


class ResultMessage:
    def __init__(self, subtype="success", is_error=False, result=None, duration_ms=1500):
        self.subtype = subtype
        self.is_error = is_error
        self.result = result
        self.duration_ms = duration_ms


def test_claude_renders_text_and_tool_use():
    agent = ClaudeAgent(AgentOptions())
    log = ListLog()
    transcript = []

    message = AssistantMessage([
        TextBlock("Looking at the tests"),
        ToolUseBlock("Edit", {"file_path": "src/app.py", "old_string": "x"}),
    ])
    assert agent.handle_message(message, log, transcript) is None

    assert transcript == ["Looking at the tests"]
    assert "Looking at the tests\n" in log.text
    assert "[tool] Edit" in log.text
    assert "src/app.py" in log.text


def test_claude_result_error_is_reported():
    agent = ClaudeAgent(AgentOptions())
    log = ListLog()
    error = agent.handle_message(
        ResultMessage(subtype="error_during_execution", is_error=True, result="Rate exceeded"), log, []
    )
    assert error == "Rate exceeded"
    assert "[error] Rate exceeded" in log.text


def test_claude_result_success_is_logged():
    agent = ClaudeAgent(AgentOptions())
    log = ListLog()
    assert agent.handle_message(ResultMessage(), log, []) is None
    assert "[result] success in 1.5s" in log.text


def test_claude_run_success(tmp_path):
    agent = ClaudeAgent(AgentOptions())

    async def fake_stream(prompt, context, transcript):
        transcript.append(f"done {COMPLETION_SENTINEL}")

    context = make_context(tmp_path)
    with patch.object(agent, "_stream", side_effect=fake_stream):
        result = agent.run(context)

    assert result.exit_code == EXIT_SUCCESS
    assert has_completion_sentinel(result.output)
    assert "Command: claude" in context.log.text


def test_claude_run_usage_limit(tmp_path):
    agent = ClaudeAgent(AgentOptions())

    async def fake_stream(prompt, context, transcript):
        transcript.append("partial work")
        raise AgentInvocationError("Claude reported error", transcript="partial work\nRate Exceeded")

    context = make_context(tmp_path)
    with patch.object(agent, "_stream", side_effect=fake_stream):
        result = agent.run(context)

    assert result.exit_code == EXIT_USAGE_LIMIT
    assert "Rate Exceeded" in result.output
    assert "[usage limit]" in context.log.text


def test_claude_run_generic_failure(tmp_path):
    agent = ClaudeAgent(AgentOptions())

    async def fake_stream(prompt, context, transcript):
        raise RuntimeError("CLI not found")

    context = make_context(tmp_path)
    with patch.object(agent, "_stream", side_effect=fake_stream):
        result = agent.run(context)

    assert result.exit_code == EXIT_FAILURE
    assert "CLI not found" in result.output


def test_backend_errors_from_the_log_propagate(tmp_path):
    agent = ClaudeAgent(AgentOptions())

    async def fake_stream(prompt, context, transcript):
        raise BackendError("append_log", "run run-1", 503, "unavailable")

    with patch.object(agent, "_stream", side_effect=fake_stream):
        with pytest.raises(BackendError):
            agent.run(make_context(tmp_path))


def test_claude_sdk_extra_args():
    agent = ClaudeAgent(AgentOptions(extra_args=["--max-turns", "5", "--verbose", "--model", "x"]))
    assert agent.sdk_extra_args() == {"max-turns": "5", "verbose": None}


def test_claude_describe_invocation_omits_prompt():
    agent = ClaudeAgent(AgentOptions(model="sonnet"))
    described = agent.describe_invocation()
    assert described.startswith("claude")
    assert "--model sonnet" in described
    assert "[prompt omitted]" in described


# ============================================================================
# OpenCode (subprocess)
# ============================================================================

def fake_process(output: str, returncode: int):
    process = MagicMock()
    process.stdout = io.StringIO(output)
    process.returncode = returncode
    process.wait.return_value = returncode
    process.poll.return_value = returncode
    return process


def test_opencode_builds_command():
    agent = OpenCodeAgent(AgentOptions(model="anthropic/claude", extra_args=["--print-logs"]))
    args = agent.build_args("PROMPT")
    assert args == ["run", "--model", "anthropic/claude", "--print-logs", "PROMPT"]
    assert agent.describe_invocation() == "opencode run --model anthropic/claude --print-logs [prompt omitted]"


def test_opencode_streams_output_and_succeeds(tmp_path):
    agent = OpenCodeAgent(AgentOptions())
    context = make_context(tmp_path, Task(id="t1"))

    with patch("runloop.providers.subprocess.Popen", return_value=fake_process("step 1\nstep 2\n", 0)) as popen:
        result = agent.run(context)

    assert result.exit_code == EXIT_SUCCESS
    assert result.output == "step 1\nstep 2"
    assert "step 1\n" in context.log.chunks
    cmd = popen.call_args[0][0]
    assert cmd[:2] == ["opencode", "run"]
    assert "id: t1" in cmd[-1]
    assert popen.call_args.kwargs["cwd"] == str(tmp_path)


@pytest.mark.parametrize("returncode", [1, 2, 3])
def test_opencode_exit_code_passes_through(tmp_path, returncode):
    agent = OpenCodeAgent(AgentOptions())
    with patch("runloop.providers.subprocess.Popen", return_value=fake_process("quota hit\n", returncode)):
        result = agent.run(make_context(tmp_path))
    assert result.exit_code == returncode


def test_opencode_output_does_not_override_declared_code(tmp_path):
    agent = OpenCodeAgent(AgentOptions())
    with patch("runloop.providers.subprocess.Popen", return_value=fake_process("Error: 429 Too Many Requests\n", 1)):
        result = agent.run(make_context(tmp_path))
    assert result.exit_code == EXIT_FAILURE


def test_opencode_unset_exit_code_is_success(tmp_path):
    agent = OpenCodeAgent(AgentOptions())
    with patch("runloop.providers.subprocess.Popen", return_value=fake_process("done\n", None)):
        result = agent.run(make_context(tmp_path))
    assert result.exit_code == EXIT_SUCCESS


class HangingStdout:
    """Yields one line, then blocks until the process is killed."""

    def __init__(self, killed):
        self.killed = killed

    def __iter__(self):
        yield "starting\n"
        self.killed.wait(5)

    def close(self):
        pass


def test_opencode_timeout_kills_process(tmp_path):
    killed = threading.Event()
    process = MagicMock()
    process.stdout = HangingStdout(killed)
    process.kill.side_effect = killed.set
    process.returncode = -9
    process.wait.return_value = -9
    process.poll.return_value = -9

    agent = OpenCodeAgent(AgentOptions(timeout=0.05))
    context = make_context(tmp_path)
    with patch("runloop.providers.subprocess.Popen", return_value=process):
        result = agent.run(context)

    process.kill.assert_called()
    assert killed.is_set()
    assert result.exit_code == EXIT_FAILURE
    assert "timed out" in result.output
    assert "timed out" in context.log.text


def test_opencode_missing_binary_is_failure(tmp_path):
    agent = OpenCodeAgent(AgentOptions(bin=str(Path(tmp_path) / "nope")))
    with patch("runloop.providers.subprocess.Popen", side_effect=FileNotFoundError("nope")):
        result = agent.run(make_context(tmp_path))
    assert result.exit_code == EXIT_FAILURE
    assert "nope" in result.output
