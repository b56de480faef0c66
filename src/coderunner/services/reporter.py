from __future__ import annotations

import structlog

from ..core.errors import CodeRunnerError, ExecutionFailed
from ..core.models import ErrorKind, ExecOutcome, JobError, JobResult, JobState, Limits
from ..executor.base import raise_for_outcome
from .registry import JobRegistry

log = structlog.get_logger(__name__)

STDERR_LABEL = "\n[Stderr]\n"


class ResultReporter:
    """Turns a sandbox outcome (or the exception that prevented one) into a terminal job state."""

    def __init__(self, registry: JobRegistry):
        self.registry = registry

    def report_outcome(self, job_id: str, outcome: ExecOutcome, limits: Limits) -> bool:
        try:
            raise_for_outcome(outcome, limits)
        except CodeRunnerError as exc:
            return self.report_exception(job_id, exc)

        output = outcome.stdout
        if outcome.stderr:
            # exit 0 with stderr still counts as success; stderr is appended under a label
            output += STDERR_LABEL + outcome.stderr
        result = JobResult(output=output, execution_time=outcome.duration_s)
        return self.registry.transition(job_id, JobState.COMPLETED, result=result)

    def report_exception(self, job_id: str, exc: BaseException) -> bool:
        kind = exc.kind if isinstance(exc, CodeRunnerError) else ErrorKind.INFRASTRUCTURE
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, ExecutionFailed) and kind == ErrorKind.RUNTIME:
            message = exc.stderr if exc.stderr.strip() else message
        log.info("job_failed", job_id=job_id, kind=kind.value)
        return self.registry.transition(
            job_id, JobState.FAILED, error=JobError(message=message, kind=kind)
        )
