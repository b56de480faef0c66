from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Protocol, Tuple

from ..core.errors import ExecutionFailed, ExecutionTimeout, ResourceLimitExceeded
from ..core.models import ExecOutcome, ExecutionRequest, Limits


@dataclass
class ExecSpec:
    """Everything needed to start one sandboxed process. argv is exec'd as-is; submitted source never appears in it."""
    argv: List[str]
    workdir: Path
    env: Dict[str, str]
    timeout_s: float
    limits: Limits
    name: str = ""
    max_output_bytes: int = 1024 * 1024


class Executor(Protocol):
    name: str

    def run(self, request: ExecutionRequest) -> ExecOutcome: ...

    def check_health(self) -> Tuple[bool, str]: ...


def raise_for_outcome(outcome: ExecOutcome, limits: Limits) -> ExecOutcome:
    """Return a successful outcome unchanged, raise the matching error otherwise."""
    if outcome.timed_out:
        raise ExecutionTimeout(limits.timeout_s)
    if outcome.oom_killed:
        raise ResourceLimitExceeded(limits.memory_mb, outcome.stderr, outcome.exit_code)
    if outcome.exit_code != 0:
        raise ExecutionFailed(outcome.stderr, outcome.exit_code)
    return outcome
