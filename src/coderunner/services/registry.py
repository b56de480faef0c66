from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Dict, Optional, Union

import structlog

from ..core.errors import NotFound, ValidationError
from ..core.languages import parse_language
from ..core.models import Job, JobError, JobResult, JobState, Language
from ..core.utils import new_job_id, utcnow

log = structlog.get_logger(__name__)

_ALLOWED = {
    JobState.PENDING: {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


@dataclass
class _Entry:
    job: Job
    lock: threading.Lock = field(default_factory=threading.Lock)
    done: threading.Event = field(default_factory=threading.Event)


class JobRegistry:
    """
    Owns every job for its whole lifetime.

    Writers of one job are serialised by that job's lock; the map lock only
    covers inserting, looking up and pruning entries. Readers get copies.
    """

    def __init__(self, max_source_bytes: int = 64 * 1024, retention_s: int = 0):
        self.max_source_bytes = max_source_bytes
        self.retention_s = retention_s
        self._jobs: Dict[str, _Entry] = {}
        self._map_lock = threading.Lock()

    # ---------- submission ----------

    def validate(self, language: Union[str, Language, None], source_code: Optional[str]) -> Language:
        lang = parse_language(language)
        if not isinstance(source_code, str) or not source_code.strip():
            raise ValidationError("code is required")
        size = len(source_code.encode("utf-8"))
        if size > self.max_source_bytes:
            raise ValidationError(
                f"code is too large ({size} bytes, limit {self.max_source_bytes})"
            )
        return lang

    def submit(self, language: Union[str, Language, None], source_code: Optional[str]) -> str:
        lang = self.validate(language, source_code)
        if self.retention_s:
            self.prune()

        entry = _Entry(Job(id=new_job_id(), language=lang, source_code=source_code))
        with self._map_lock:
            while entry.job.id in self._jobs:
                entry.job.id = new_job_id()
            self._jobs[entry.job.id] = entry
        log.info("job_submitted", job_id=entry.job.id, language=lang.value,
                 size=len(source_code))
        return entry.job.id

    # ---------- reads ----------

    def _entry(self, job_id: str) -> _Entry:
        with self._map_lock:
            entry = self._jobs.get(job_id)
        if entry is None:
            raise NotFound(job_id)
        return entry

    def get(self, job_id: str) -> Job:
        entry = self._entry(job_id)
        # Job fields are replaced, never mutated in place, so a shallow copy is a snapshot
        return replace(entry.job)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job is terminal (or timeout) and return a snapshot."""
        entry = self._entry(job_id)
        entry.done.wait(timeout)
        return replace(entry.job)

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._jobs)

    def counts(self) -> Dict[str, int]:
        with self._map_lock:
            jobs = [e.job for e in self._jobs.values()]
        out = {s.value: 0 for s in JobState}
        for job in jobs:
            out[job.state.value] += 1
        return out

    # ---------- writes ----------

    def transition(
        self,
        job_id: str,
        new_state: JobState,
        *,
        result: Optional[JobResult] = None,
        error: Optional[JobError] = None,
    ) -> bool:
        try:
            entry = self._entry(job_id)
        except NotFound:
            log.error("transition_unknown_job", job_id=job_id, to=new_state.value)
            return False

        with entry.lock:
            job = entry.job
            if new_state not in _ALLOWED[job.state]:
                log.warning("transition_rejected", job_id=job_id,
                            frm=job.state.value, to=new_state.value)
                return False
            if new_state == JobState.COMPLETED and (result is None or error is not None):
                log.warning("transition_rejected", job_id=job_id, to=new_state.value,
                            reason="completed_requires_result")
                return False
            if new_state == JobState.FAILED and (error is None or result is not None):
                log.warning("transition_rejected", job_id=job_id, to=new_state.value,
                            reason="failed_requires_error")
                return False
            if new_state == JobState.RUNNING and (result is not None or error is not None):
                log.warning("transition_rejected", job_id=job_id, to=new_state.value,
                            reason="running_has_no_payload")
                return False

            now = utcnow()
            if new_state == JobState.RUNNING:
                entry.job = replace(job, state=new_state, started_at=now)
            else:
                entry.job = replace(job, state=new_state, completed_at=now,
                                    result=result, error=error)

        log.info("job_transition", job_id=job_id, frm=job.state.value, to=new_state.value)
        if new_state.terminal:
            entry.done.set()
        return True

    def prune(self) -> int:
        """Drop terminal jobs that completed more than retention_s ago."""
        if not self.retention_s:
            return 0
        cutoff = utcnow() - timedelta(seconds=self.retention_s)
        with self._map_lock:
            stale = [
                jid for jid, e in self._jobs.items()
                if e.job.state.terminal and e.job.completed_at and e.job.completed_at < cutoff
            ]
            for jid in stale:
                del self._jobs[jid]
        if stale:
            log.info("jobs_pruned", count=len(stale))
        return len(stale)
