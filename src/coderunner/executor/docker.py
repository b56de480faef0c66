"""
Docker backend: one throwaway container per job.
"""

from __future__ import annotations

import os
import subprocess
from typing import Dict, List, Optional, Tuple

import structlog

from ..core.errors import InfrastructureError
from ..core.languages import LANGUAGES, LanguageSpec
from ..core.models import ExecOutcome, ExecutionRequest, Language
from .base import ExecSpec
from .supervisor import Supervisor

log = structlog.get_logger(__name__)

CONTAINER_WORKDIR = "/app"
# `docker run` itself failed (daemon down, bad image, bad flag)
DOCKER_RUN_ERROR = 125
SIGKILL_EXIT = 137


class DockerExecutor:
    """
    Runs the language's command inside a container with:
      --network none, --memory/--memory-swap, --cpus, --pids-limit,
      all capabilities dropped and only the job workspace mounted at /app.

    The container is named after the job so it can be killed and removed by
    name regardless of how the docker CLI process ends.
    """

    name = "docker"

    def __init__(
        self,
        languages: Optional[Dict[Language, LanguageSpec]] = None,
        docker_bin: str = "docker",
        supervisor: Optional[Supervisor] = None,
        control_timeout_s: float = 15,
    ):
        self.languages = languages or dict(LANGUAGES)
        self.docker_bin = docker_bin
        self.supervisor = supervisor or Supervisor()
        self.control_timeout_s = control_timeout_s

    @staticmethod
    def container_name(job_id: str) -> str:
        return f"coderunner-{job_id}"

    def build_spec(self, request: ExecutionRequest) -> ExecSpec:
        lang = self.languages[request.language]
        limits = request.limits
        name = self.container_name(request.job_id)
        argv: List[str] = [
            self.docker_bin, "run",
            "--name", name,
            "--label", "coderunner.job=" + request.job_id,
            "--memory", f"{limits.memory_mb}m",
            "--memory-swap", f"{limits.memory_mb}m",
            "--cpus", f"{limits.cpus}",
            "--pids-limit", str(limits.pids_max),
            "--ulimit", f"nofile={limits.nofile}:{limits.nofile}",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--volume", f"{request.workspace.resolve()}:{CONTAINER_WORKDIR}:rw",
            "--workdir", CONTAINER_WORKDIR,
        ]
        if not request.network:
            argv += ["--network", "none"]
        argv.append(lang.image)
        argv += lang.container_command()

        return ExecSpec(
            argv=argv,
            workdir=request.workspace,
            env=_cli_env(),
            timeout_s=limits.timeout_s,
            limits=limits,
            name=name,
        )

    def run(self, request: ExecutionRequest) -> ExecOutcome:
        spec = self.build_spec(request)
        log.info("container_launch", job_id=request.job_id, name=spec.name,
                 image=self.languages[request.language].image)
        try:
            outcome = self.supervisor.run(spec, on_timeout=lambda: self._control("kill", spec.name))
            if not outcome.timed_out and outcome.exit_code == DOCKER_RUN_ERROR:
                raise InfrastructureError(outcome.stderr.strip() or "docker run failed")
            if not outcome.timed_out and outcome.exit_code == SIGKILL_EXIT:
                outcome.oom_killed = self._oom_killed(spec.name)
            return outcome
        finally:
            # no --rm: the container has to outlive the CLI long enough to be inspected
            self._control("rm", "--force", spec.name)

    # ---------- docker control plane ----------

    def _control(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.docker_bin, *args],
                capture_output=True,
                text=True,
                timeout=self.control_timeout_s,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("docker_control_failed", args=list(args), error=str(e))
            return subprocess.CompletedProcess([self.docker_bin, *args], 1, "", str(e))

    def _oom_killed(self, name: str) -> bool:
        res = self._control("inspect", "--format", "{{.State.OOMKilled}}", name)
        return res.returncode == 0 and res.stdout.strip().lower() == "true"

    def check_health(self) -> Tuple[bool, str]:
        """Return (healthy, detail) for docker daemon availability."""
        try:
            result = subprocess.run(
                [self.docker_bin, "info", "--format", "{{.ServerVersion}}"],
                capture_output=True,
                text=True,
                timeout=self.control_timeout_s,
                check=False,
            )
        except FileNotFoundError:
            return False, "docker CLI not found"
        except subprocess.TimeoutExpired:
            return False, "docker check timed out"

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or "docker daemon unavailable"
            return False, detail
        return True, f"docker daemon ready (server {result.stdout.strip() or 'unknown'})"


def _cli_env() -> Dict[str, str]:
    # the docker CLI needs PATH/HOME and any DOCKER_* endpoint settings; nothing reaches the container
    keep = ("PATH", "HOME", "DOCKER_HOST", "DOCKER_CONFIG", "DOCKER_CONTEXT",
            "DOCKER_TLS_VERIFY", "DOCKER_CERT_PATH")
    return {k: os.environ[k] for k in keep if k in os.environ}
