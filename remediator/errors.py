"""
Error taxonomy for Cluster Remediator.

Only InfrastructureUnavailable (and SessionNotFound for calls that reference
an unknown session) escapes the facade. Everything else is caught where it is
raised and turned into session data.
"""

from typing import Optional


class RemediatorError(Exception):
    """Base class for all remediator errors."""


class ClusterQueryFailed(RemediatorError):
    """A read-only cluster query failed. Recorded as evidence."""

    def __init__(self, command: str, message: str, exit_code: Optional[int] = None):
        self.command = command
        self.message = message
        self.exit_code = exit_code
        super().__init__(f"{command}: {message}")


class ModelResponseMalformed(RemediatorError):
    """The model response could not be parsed into the expected schema."""


class IterationCeilingReached(RemediatorError):
    """The investigation hit the iteration ceiling without converging."""

    def __init__(self, ceiling: int):
        self.ceiling = ceiling
        super().__init__(
            f"Investigation did not converge within {ceiling} iterations"
        )


class ExecutionPartialFailure(RemediatorError):
    """A single remediation command failed inside a batch."""

    def __init__(self, command: str, message: str):
        self.command = command
        self.message = message
        super().__init__(f"{command}: {message}")


class InfrastructureUnavailable(RemediatorError):
    """Store, model backend or cluster CLI is unreachable."""


class SessionNotFound(RemediatorError):
    """A call referenced a session id that does not exist."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")
