import sys
import time
from pathlib import Path

import pytest

from coderunner.core.settings import Settings
from coderunner.services.job_service import JobService


@pytest.fixture
def settings(tmp_path):
    return Settings(
        backend="host",
        workspace_root=tmp_path / "ws",
        pool_size=2,
        timeout_s=2,
        memory_mb=256,
        retention_s=0,
        host_toolchains={"python": [sys.executable, "-u", "{file}"]},
    )


@pytest.fixture
def service(settings):
    svc = JobService(settings).start()
    yield svc
    svc.stop()


def pid_alive(pid: int) -> bool:
    """True while pid exists and is not a zombie."""
    stat = Path(f"/proc/{pid}/stat")
    try:
        fields = stat.read_text().rsplit(")", 1)[1].split()
    except (FileNotFoundError, ProcessLookupError):
        return False
    return fields[0] != "Z"


def wait_dead(pid: int, within: float = 3.0) -> bool:
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)
