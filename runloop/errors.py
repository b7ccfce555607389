"""Exception types raised across runloop."""

from typing import Optional


class RunLoopError(Exception):
    """Base class for all runloop errors."""
    pass


class ConfigurationError(RunLoopError):
    """Raised when required configuration is missing or invalid."""
    pass


class UnsupportedAgentError(ConfigurationError):
    """Raised when an agent name does not resolve to a known implementation."""
    pass


class InvalidBranchNameError(ConfigurationError):
    """Raised when a requested sandbox branch name is not safe for git."""
    pass


class SpawnError(RunLoopError):
    """Raised when the detached supervisor process could not be started."""
    pass


class InvalidTransitionError(RunLoopError):
    """Raised on an illegal run status transition."""
    pass


class AgentInvocationError(RunLoopError):
    """Raised inside an agent adapter when the external agent reports an error."""

    def __init__(self, message: str, transcript: str = ""):
        super().__init__(message)
        self.transcript = transcript


class BackendError(RunLoopError):
    """
    Raised when a backend API call does not succeed.

    Attributes:
        operation: Client method that failed (e.g. "write_run")
        resource: Identifier of the resource involved (run id, sprint id, ...)
        status_code: HTTP status, or None for transport failures
        body: Response body text, if any
    """

    def __init__(
        self,
        operation: str,
        resource: str,
        status_code: Optional[int] = None,
        body: str = "",
    ):
        self.operation = operation
        self.resource = resource
        self.status_code = status_code
        self.body = body

        status = f"HTTP {status_code}" if status_code is not None else "no response"
        message = f"{operation} failed for {resource}: {status}"
        if body:
            message += f" - {body[:500]}"
        super().__init__(message)


class ClientClosedError(BackendError):
    """Raised when a BackendClient is used after close()."""

    def __init__(self, operation: str):
        RunLoopError.__init__(
            self, f"{operation} called on a closed BackendClient"
        )
        self.operation = operation
        self.resource = ""
        self.status_code = None
        self.body = ""
