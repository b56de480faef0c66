"""Exceptions raised by the execution engine."""

from __future__ import annotations
from typing import Optional

from .models import ErrorKind


class CodeRunnerError(Exception):
    """Base exception for the execution engine."""

    kind = ErrorKind.INFRASTRUCTURE


class ValidationError(CodeRunnerError, ValueError):
    """Raised when a submission has an unsupported language or unusable source."""

    kind = ErrorKind.VALIDATION


class NotFound(CodeRunnerError, LookupError):
    """Raised when a job id is unknown to the registry."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, job_id: str):
        super().__init__(f"job_not_found:{job_id}")
        self.job_id = job_id


class ExecutionTimeout(CodeRunnerError, TimeoutError):
    """Raised when the supervisor killed an execution at its wall-clock budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_s: float):
        super().__init__(f"Time Limit Exceeded ({format_seconds(timeout_s)})")
        self.timeout_s = timeout_s


class ExecutionFailed(CodeRunnerError, RuntimeError):
    """Raised when submitted code exited non-zero; carries its stderr."""

    kind = ErrorKind.RUNTIME

    def __init__(self, stderr: str, exit_code: Optional[int] = None):
        message = stderr if stderr.strip() else f"Process exited with code {exit_code}"
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class ResourceLimitExceeded(ExecutionFailed):
    """Raised when the sandbox killed an execution for crossing its memory ceiling."""

    kind = ErrorKind.RESOURCE_LIMIT

    def __init__(self, memory_mb: int, stderr: str = "", exit_code: Optional[int] = None):
        CodeRunnerError.__init__(self, f"Memory Limit Exceeded ({memory_mb} MiB)")
        self.stderr = stderr
        self.exit_code = exit_code
        self.memory_mb = memory_mb


class InfrastructureError(CodeRunnerError):
    """Raised when the sandbox could not be launched at all."""

    kind = ErrorKind.INFRASTRUCTURE


def format_seconds(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value)}s"
    return f"{value:g}s"
