from __future__ import annotations

import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

import structlog

from ..core.languages import LanguageSpec

log = structlog.get_logger(__name__)


class WorkspaceManager:
    """
    One ephemeral directory per job:
      <root>/<job_id>/
        └─ main.<ext>   (submitted source)

    The directory is the only on-disk trace of submitted code and is removed
    as soon as the job is terminal.
    """

    def __init__(self, root: Path):
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, job_id: str) -> Path:
        p = (self.root / job_id).resolve()
        if p.parent != self.root:
            raise ValueError(f"invalid job id for workspace: {job_id!r}")
        return p

    def allocate(self, job_id: str, spec: LanguageSpec, source: str) -> Path:
        ws = self.path_for(job_id)
        # exist_ok=False: two jobs never share a directory
        ws.mkdir(mode=0o700)
        try:
            src = ws / spec.source_name
            src.write_text(source, encoding="utf-8")
            src.chmod(0o644)
        except BaseException:
            self.release(ws)
            raise
        log.debug("workspace_allocated", job_id=job_id, path=str(ws))
        return ws

    def release(self, ws: Path) -> bool:
        """Remove a workspace. Best-effort: failures are logged, never raised."""
        try:
            shutil.rmtree(ws)
        except FileNotFoundError:
            return True
        except OSError:
            log.exception("workspace_cleanup_failed", path=str(ws))
            return False
        log.debug("workspace_released", path=str(ws))
        return True

    @contextmanager
    def workspace(self, job_id: str, spec: LanguageSpec, source: str) -> Iterator[Path]:
        ws = self.allocate(job_id, spec, source)
        try:
            yield ws
        finally:
            self.release(ws)

    def leftovers(self) -> List[Path]:
        return sorted(p for p in self.root.iterdir() if p.is_dir())

    def sweep(self) -> int:
        """Remove workspaces left behind by a previous process."""
        stale = self.leftovers()
        for p in stale:
            self.release(p)
        if stale:
            log.warning("stale_workspaces_removed", count=len(stale))
        return len(stale)
