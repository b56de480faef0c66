from __future__ import annotations
from typing import Any, Dict, Optional, Tuple

import structlog

from ..core.languages import LanguageSpec, language_table
from ..core.models import ExecutionRequest, Job, JobState, Language
from ..core.settings import Settings
from ..executor.base import Executor
from ..executor.docker import DockerExecutor
from ..executor.host import HostExecutor
from .dispatcher import Dispatcher
from .registry import JobRegistry
from .reporter import ResultReporter
from .storage import WorkspaceManager

log = structlog.get_logger(__name__)


def build_executor(
    settings: Settings,
    languages: Optional[Dict[Language, LanguageSpec]] = None,
) -> Executor:
    if languages is None:
        languages = language_table(settings.images, settings.host_toolchains)
    if settings.backend == "docker":
        return DockerExecutor(languages, docker_bin=settings.docker_bin)
    if settings.backend == "host":
        return HostExecutor(
            languages,
            unshare=settings.host_unshare,
            use_cgroup=settings.use_cgroup,
            cgroup_base=settings.cgroup_base,
        )
    raise ValueError(f"unknown backend: {settings.backend}")


class JobService:
    """
    Wires registry + workspaces + executor + reporter + worker pool.

    submit() only validates, records and enqueues; the pipeline runs on a
    worker thread in process():
      RUNNING -> workspace -> sandbox (under the watchdog) -> report -> cleanup
    """

    def __init__(self, settings: Settings, executor: Optional[Executor] = None):
        self.settings = settings
        self.limits = settings.limits
        self.registry = JobRegistry(
            max_source_bytes=settings.max_source_bytes,
            retention_s=settings.retention_s,
        )
        self.workspaces = WorkspaceManager(settings.workspace_root)
        languages = language_table(settings.images, settings.host_toolchains)
        self.executor = executor or build_executor(settings, languages)
        # workspaces name the source file from the same table the executor launches with
        self.languages = getattr(self.executor, "languages", None) or languages
        self.reporter = ResultReporter(self.registry)
        self.dispatcher = Dispatcher(
            self.process,
            pool_size=settings.pool_size,
            alert_depth=settings.queue_alert_depth,
        )

    # ---------- lifecycle ----------

    def start(self) -> "JobService":
        self.workspaces.sweep()
        self.dispatcher.start()
        return self

    def stop(self, wait: bool = True) -> None:
        self.dispatcher.stop(wait=wait)

    def __enter__(self) -> "JobService":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    # ---------- boundary operations ----------

    def submit(self, language: Any, code: Any) -> str:
        job_id = self.registry.submit(language, code)
        self.dispatcher.enqueue(job_id)
        return job_id

    def get(self, job_id: str) -> Job:
        return self.registry.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        return self.registry.wait(job_id, timeout)

    def status(self, job_id: str) -> Dict[str, Any]:
        return job_status(self.registry.get(job_id))

    def health(self) -> Tuple[bool, Dict[str, Any]]:
        ok, detail = self.executor.check_health()
        return ok, {
            "backend": self.executor.name,
            "detail": detail,
            "queueDepth": self.dispatcher.depth,
            "queueAlert": self.dispatcher.over_threshold,
            "running": self.dispatcher.running,
            "poolSize": self.dispatcher.pool_size,
            "jobs": self.registry.counts(),
        }

    # ---------- worker side ----------

    def process(self, job_id: str) -> None:
        """Run one job to a terminal state. Never raises for the job's own failures."""
        job = self.registry.get(job_id)
        if not self.registry.transition(job_id, JobState.RUNNING):
            return
        log_ = log.bind(job_id=job_id, language=job.language.value)
        log_.info("job_started")
        try:
            spec = self.languages[job.language]
            with self.workspaces.workspace(job_id, spec, job.source_code) as ws:
                request = ExecutionRequest(
                    job_id=job_id,
                    language=job.language,
                    source=job.source_code,
                    workspace=ws,
                    source_file=ws / spec.source_name,
                    limits=self.limits,
                )
                outcome = self.executor.run(request)
            self.reporter.report_outcome(job_id, outcome, self.limits)
            log_.info("job_finished", exit_code=outcome.exit_code,
                      timed_out=outcome.timed_out, duration_s=round(outcome.duration_s, 3))
        except Exception as exc:
            log_.exception("job_setup_or_launch_failed")
            self.reporter.report_exception(job_id, exc)


def job_status(job: Job) -> Dict[str, Any]:
    """The shape external pollers see."""
    return {
        "jobId": job.id,
        "status": job.state.value,
        "output": job.result.output if job.result else None,
        "executionTime": job.result.execution_time_str if job.result else None,
        "error": job.error.message if job.error else None,
        "errorKind": job.error.kind.value if job.error else None,
    }
