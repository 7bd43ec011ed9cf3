"""
FORKYARD error taxonomy.

Validation errors (caller mistakes) and infrastructure errors (git,
supervised processes) share one base so callers can catch either.
"""

from __future__ import annotations


class ForkyardError(Exception):
    pass


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class MissingArgumentError(ForkyardError):
    """A required description or prompt was absent or blank."""


class NotFoundError(ForkyardError):
    """The text to replace does not occur in the file."""


class AmbiguousMatchError(ForkyardError):
    """The text to replace occurs more than once and replace_all was not set."""


class WorkspacePolicyError(ForkyardError):
    """A session tried to change isolation in a way its policy forbids."""


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class GitOperationError(ForkyardError):
    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Git failed ({returncode}): {' '.join(command)}\n{stderr.strip()}")


class RemoteAgentError(ForkyardError):
    """Base for failures of a supervised remote agent process."""

    def __init__(
        self,
        message: str,
        name: str | None = None,
        port: int | None = None,
        session_id: str | None = None,
    ):
        self.name = name
        self.port = port
        self.session_id = session_id
        details = ", ".join(
            f"{key}={value}"
            for key, value in (("name", name), ("port", port), ("session", session_id))
            if value is not None
        )
        super().__init__(f"{message} ({details})" if details else message)


class StartupTimeoutError(RemoteAgentError):
    pass


class SessionCreationError(RemoteAgentError):
    pass


class ProcessDiedError(RemoteAgentError):
    pass
