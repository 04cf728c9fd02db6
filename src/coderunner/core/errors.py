from __future__ import annotations
from typing import Any, Dict, Optional


class CodeRunnerError(Exception):
    """Base class; ``context`` carries structured fields for logging."""

    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InvalidSubmission(CodeRunnerError):
    """Malformed bundle. Raised before any sandbox is created."""


class ConfigError(CodeRunnerError):
    pass


class PhaseTransitionError(CodeRunnerError):
    pass


class SandboxError(CodeRunnerError):
    """
    Collaborator malfunction (sandbox runtime). The only category a caller
    may retry; the driver itself never does.
    """

    retryable = True


class SandboxCreationError(SandboxError):
    pass


class WriteError(SandboxError):
    pass


class SandboxFault(SandboxError):
    pass
