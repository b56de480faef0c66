from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from ..core.errors import InfrastructureError
from ..core.languages import LANGUAGES, LanguageSpec
from ..core.models import ExecOutcome, ExecutionRequest, Language
from . import cgroups
from .base import ExecSpec
from .rlimits import rlimits_preexec
from .supervisor import Supervisor

log = structlog.get_logger(__name__)

UNSHARE_FLAGS = ["--user", "--map-root-user", "--net", "--pid", "--fork", "--kill-child"]


class HostExecutor:
    """
    Runs the language's host toolchain directly in the workspace.

    Isolation is layered on as the host allows it:
      - always: clean environment, own session/process group, rlimits
      - host_unshare: private user + network + pid namespaces (no network)
      - use_cgroup: cgroup v2 leaf with memory.max / cpu.max / pids.max,
        killed as a whole on timeout
    """

    name = "host"

    def __init__(
        self,
        languages: Optional[Dict[Language, LanguageSpec]] = None,
        *,
        unshare: bool = False,
        use_cgroup: bool = False,
        cgroup_base: Optional[Path] = None,
        supervisor: Optional[Supervisor] = None,
    ):
        self.languages = languages or dict(LANGUAGES)
        self.unshare = unshare
        self.use_cgroup = use_cgroup
        self.cgroup_base = cgroup_base
        self.supervisor = supervisor or Supervisor()

    def build_spec(self, request: ExecutionRequest) -> ExecSpec:
        lang = self.languages[request.language]
        argv: List[str] = lang.host_command()
        if self.unshare and not request.network:
            argv = [shutil.which("unshare") or "unshare", *UNSHARE_FLAGS, *argv]
        ws = str(request.workspace)
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": ws,
            "TMPDIR": ws,
            "LANG": "C.UTF-8",
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }
        return ExecSpec(
            argv=argv,
            workdir=request.workspace,
            env=env,
            timeout_s=request.limits.timeout_s,
            limits=request.limits,
            name=f"host-{request.job_id}",
        )

    def run(self, request: ExecutionRequest) -> ExecOutcome:
        lang = self.languages[request.language]
        spec = self.build_spec(request)
        # with a cgroup, memory is capped by memory.max rather than RLIMIT_AS
        preexec = rlimits_preexec(request.limits, lang.cap_address_space and not self.use_cgroup)

        if not self.use_cgroup:
            outcome = self.supervisor.run(spec, preexec=preexec)
            outcome.oom_killed = _python_memory_error(lang, outcome)
            return outcome

        leaf = cgroups.create_leaf(cgroups.get_base(self.cgroup_base), request.job_id)

        def enter_leaf() -> None:
            # child side of fork: join the leaf before exec so nothing it starts escapes
            cgroups.attach(leaf, os.getpid())
            preexec()

        def verify(pid: int) -> None:
            if not cgroups.contains(leaf, pid):
                raise InfrastructureError(f"process {pid} did not land in {leaf}")

        try:
            cgroups.set_limits(leaf, request.limits)
            outcome = self.supervisor.run(
                spec,
                preexec=enter_leaf,
                on_spawn=verify,
                on_timeout=lambda: cgroups.kill(leaf),
                on_exit=lambda: cgroups.kill(leaf),
            )
            outcome.oom_killed = not outcome.timed_out and (
                cgroups.oom_kills(leaf) > 0 or _python_memory_error(lang, outcome)
            )
            return outcome
        finally:
            cgroups.kill(leaf)
            cgroups.teardown(leaf)

    def check_health(self) -> Tuple[bool, str]:
        missing = sorted(
            spec.language.value for spec in self.languages.values()
            if not shutil.which(spec.host_binary())
        )
        if self.unshare and not shutil.which("unshare"):
            return False, "unshare not found"
        if self.use_cgroup and not (cgroups.CGROOT / "cgroup.controllers").exists():
            return False, "cgroup v2 not available"
        if missing:
            return True, f"host toolchains missing for: {', '.join(missing)}"
        return True, "host toolchains ready"


def _python_memory_error(lang: LanguageSpec, outcome: ExecOutcome) -> bool:
    # under RLIMIT_AS the interpreter dies with MemoryError instead of being OOM-killed
    if not lang.cap_address_space or outcome.exit_code == 0 or outcome.timed_out:
        return False
    lines = outcome.stderr.strip().splitlines()
    return bool(lines) and lines[-1].startswith("MemoryError")
