from __future__ import annotations
import math
import resource
from typing import Callable, Optional

from ..core.models import Limits


def apply_rlimits(cpu_seconds: int, memory_bytes: Optional[int], nofile: int) -> None:
    """
    Process-level caps: CPU time, address space, open descriptors.
    Runs in the child between fork and exec; a limit the OS refuses keeps its default.
    """
    try:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
    except (ValueError, OSError):
        pass
    if memory_bytes:
        try:
            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        except (ValueError, OSError):
            pass
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (nofile, nofile))
    except (ValueError, OSError):
        pass
    # no core dumps in the workspace
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))


def rlimits_preexec(limits: Limits, cap_address_space: bool) -> Callable[[], None]:
    # CPU budget is a backstop behind the wall-clock watchdog
    cpu_seconds = max(1, math.ceil(limits.timeout_s) + 1)
    memory_bytes = limits.memory_bytes if cap_address_space else None

    def _fn():
        apply_rlimits(cpu_seconds, memory_bytes, limits.nofile)

    return _fn
