# cgroup v2 leaf per job, used by the host backend
from __future__ import annotations
from pathlib import Path
import os, signal, time

import structlog

from ..core.errors import InfrastructureError
from ..core.models import Limits

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")
CPU_PERIOD_US = 100_000


def ensure_v2() -> None:
    if not (CGROOT / "cgroup.controllers").exists():
        raise InfrastructureError("cgroup v2 is required for use_cgroup")


def _self_cgroup_base() -> Path:
    # unified v2: '0::/<relative>'
    with open("/proc/self/cgroup") as f:
        rel = ""
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (CGROOT / rel.lstrip("/")).resolve()


def get_base(configured: Path | None = None) -> Path:
    if configured:
        if not str(configured).startswith(str(CGROOT)):
            raise InfrastructureError(f"cgroup_base must start with {CGROOT}, got {configured}")
        return configured
    return _self_cgroup_base() / "coderunner"


def _enable_controllers(node: Path) -> None:
    """Delegate memory/pids/cpu to children of node (node must hold no processes)."""
    have = set((node / "cgroup.controllers").read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if want:
        (node / "cgroup.subtree_control").write_text(" ".join(want))


def create_leaf(base: Path, job_id: str) -> Path:
    ensure_v2()
    try:
        base.mkdir(parents=True, exist_ok=True)
        _enable_controllers(base)
        leaf = base / job_id
        leaf.mkdir()
    except OSError as e:
        raise InfrastructureError(f"cannot create cgroup for {job_id}: {e}") from e
    return leaf


def set_limits(leaf: Path, limits: Limits) -> None:
    try:
        (leaf / "memory.max").write_text(str(limits.memory_bytes))
        swap = leaf / "memory.swap.max"
        if swap.exists():
            swap.write_text("0")
        (leaf / "memory.oom.group").write_text("1")
        (leaf / "pids.max").write_text(str(limits.pids_max))
        quota = int(limits.cpus * CPU_PERIOD_US)
        (leaf / "cpu.max").write_text(f"{quota} {CPU_PERIOD_US}")
    except OSError as e:
        raise InfrastructureError(f"cannot apply cgroup limits on {leaf}: {e}") from e


def attach(leaf: Path, pid: int) -> None:
    # called from preexec with the child's own pid, so it is inside the leaf before exec
    try:
        (leaf / "cgroup.procs").write_text(str(pid))
    except OSError as e:
        raise InfrastructureError(f"cannot attach {pid} to {leaf}: {e}") from e


def contains(leaf: Path, pid: int) -> bool:
    """False only when pid is alive and sits in some other cgroup."""
    try:
        lines = Path(f"/proc/{pid}/cgroup").read_text().splitlines()
        rel = "/" + "/".join(leaf.relative_to(CGROOT).parts)
    except (OSError, ValueError):
        return True
    for line in lines:
        if line.startswith("0::"):
            return line.split("::", 1)[1].strip() == rel
    return True


def kill(leaf: Path) -> None:
    """SIGKILL every process in the leaf, descendants included."""
    ctl = leaf / "cgroup.kill"
    try:
        if ctl.exists():
            ctl.write_text("1")
            return
        for pid in (leaf / "cgroup.procs").read_text().split():
            if int(pid) <= 0:
                continue
            try:
                os.kill(int(pid), signal.SIGKILL)
            except ProcessLookupError:
                pass
    except OSError:
        log.exception("cgroup_kill_failed", leaf=str(leaf))


def oom_kills(leaf: Path) -> int:
    events = leaf / "memory.events"
    if not events.exists():
        return 0
    for line in events.read_text().splitlines():
        key, _, value = line.partition(" ")
        if key == "oom_kill":
            return int(value)
    return 0


def teardown(leaf: Path) -> None:
    # leaf must be empty; best-effort retry
    for _ in range(20):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            kill(leaf)
            time.sleep(0.05)
    log.warning("cgroup_teardown_failed", leaf=str(leaf))
