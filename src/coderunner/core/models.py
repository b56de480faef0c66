from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from .utils import utcnow


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    CPP = "cpp"
    GO = "go"


class JobState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    RUNTIME = "runtime"
    RESOURCE_LIMIT = "resource_limit"
    INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True)
class Limits:
    memory_mb: int = 128
    cpus: float = 0.5
    timeout_s: float = 10
    pids_max: int = 64
    nofile: int = 64

    @property
    def memory_bytes(self) -> int:
        return self.memory_mb * 1024 * 1024


@dataclass(frozen=True)
class JobResult:
    output: str
    execution_time: float  # seconds

    @property
    def execution_time_str(self) -> str:
        return f"{self.execution_time:.2f}s"


@dataclass(frozen=True)
class JobError:
    message: str
    kind: ErrorKind


@dataclass
class Job:
    id: str
    language: Language
    source_code: str
    state: JobState = JobState.PENDING
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[JobResult] = None
    error: Optional[JobError] = None


@dataclass(frozen=True)
class ExecutionRequest:
    """Derived from a job at dispatch time; lives only until the job is terminal."""
    job_id: str
    language: Language
    source: str
    workspace: Path   # per-job directory on the host
    source_file: Path # workspace / main.<ext>
    limits: Limits
    network: bool = False


@dataclass
class ExecOutcome:
    stdout: str
    stderr: str
    exit_code: int
    duration_s: float
    timed_out: bool = False
    oom_killed: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.oom_killed
