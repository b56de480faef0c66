from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, IO, Iterable, List, Optional

import structlog

from ..core.errors import InfrastructureError
from ..core.models import ExecOutcome
from .base import ExecSpec

log = structlog.get_logger(__name__)

TRUNCATED = "\n[output truncated]\n"
PROC = Path("/proc")
# how long pipes get to reach EOF once everything holding them was killed
DRAIN_GRACE_S = 2.0
# held while forking and while hunting pipe holders: a sibling job between
# fork and exec still has copies of every inherited descriptor
_SPAWN_LOCK = threading.Lock()


class _Capture:
    """Drains one pipe, keeping at most `cap` bytes."""

    def __init__(self, stream: IO[bytes], cap: int):
        self.buf = bytearray()
        self.truncated = False
        self.inode = os.fstat(stream.fileno()).st_ino
        self._stream = stream
        self._cap = cap
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        with self._stream:
            for chunk in iter(lambda: self._stream.read(65536), b""):
                room = self._cap - len(self.buf)
                if room > 0:
                    self.buf.extend(chunk[:room])
                if len(chunk) > room:
                    self.truncated = True

    def join(self, timeout: float) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def text(self) -> str:
        out = bytes(self.buf).decode("utf-8", errors="replace")
        return out + TRUNCATED if self.truncated else out


def kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def pipe_holders(inodes: Iterable[int]) -> List[int]:
    """Pids, other than ours, with an open descriptor on any of the given pipes."""
    targets = {f"pipe:[{i}]" for i in inodes}
    me = os.getpid()
    found = []
    try:
        entries = [e for e in os.listdir(PROC) if e.isdigit() and int(e) != me]
    except OSError:
        return found
    for entry in entries:
        fd_dir = PROC / entry / "fd"
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            continue
        for fd in fds:
            try:
                if os.readlink(fd_dir / fd) in targets:
                    found.append(int(entry))
                    break
            except OSError:
                continue
    return found


class Supervisor:
    """
    Runs one ExecSpec in its own process group with a wall-clock watchdog.

    When the budget expires the backend's `on_timeout` hook runs first (it
    tears down the container / cgroup), then the whole process group is
    SIGKILLed. After any exit the group is killed while the leader is still
    unreaped, `on_exit` runs, and whatever still holds the output pipes
    (e.g. a child that called setsid()) is killed too, so no child outlives
    the job and output collection is bounded.
    """

    def run(
        self,
        spec: ExecSpec,
        *,
        preexec: Optional[Callable[[], None]] = None,
        on_spawn: Optional[Callable[[int], None]] = None,
        on_timeout: Optional[Callable[[], None]] = None,
        on_exit: Optional[Callable[[], None]] = None,
    ) -> ExecOutcome:
        timed_out = threading.Event()
        reaped = threading.Event()
        # serializes the watchdog's kill against reaping the leader
        decide = threading.Lock()
        start = time.perf_counter()
        try:
            with _SPAWN_LOCK:
                p = subprocess.Popen(
                    spec.argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=str(spec.workdir),
                    env=spec.env,
                    start_new_session=True,
                    preexec_fn=preexec,
                )
        except (OSError, subprocess.SubprocessError) as e:
            raise InfrastructureError(f"cannot launch {spec.argv[0]}: {e}") from e

        out = _Capture(p.stdout, spec.max_output_bytes)
        err = _Capture(p.stderr, spec.max_output_bytes)

        def _expire() -> None:
            with decide:
                if reaped.is_set():
                    return
                timed_out.set()
            log.warning("execution_timeout", name=spec.name, pid=p.pid, timeout_s=spec.timeout_s)
            if on_timeout is not None:
                try:
                    on_timeout()
                except Exception:
                    log.exception("timeout_hook_failed", name=spec.name)
            with decide:
                if not reaped.is_set():
                    kill_group(p.pid)

        timer = threading.Timer(spec.timeout_s, _expire)
        timer.daemon = True
        timer.start()
        try:
            if on_spawn is not None:
                on_spawn(p.pid)
            # wait without reaping so the pgid cannot be recycled before the group kill
            os.waitid(os.P_PID, p.pid, os.WEXITED | os.WNOWAIT)
        finally:
            with decide:
                kill_group(p.pid)
                rc = p.wait()
                reaped.set()
            timer.cancel()
            duration = time.perf_counter() - start
            if on_exit is not None:
                try:
                    on_exit()
                except Exception:
                    log.exception("exit_hook_failed", name=spec.name)
            self._collect(spec, out, err)

        return ExecOutcome(
            stdout=out.text(),
            stderr=err.text(),
            exit_code=rc,
            duration_s=duration,
            timed_out=timed_out.is_set(),
        )

    def _collect(self, spec: ExecSpec, out: _Capture, err: _Capture) -> None:
        """Wait for both pipes to close, killing processes that escaped the group."""
        inodes = (out.inode, err.inode)
        for _ in range(3):
            if out.join(0.05) and err.join(0.05):
                return
            with _SPAWN_LOCK:
                stray = pipe_holders(inodes)
                for pid in stray:
                    try:
                        os.kill(pid, signal.SIGKILL)
                    except ProcessLookupError:
                        pass
            if stray:
                log.warning("escaped_processes_killed", name=spec.name, pids=stray)
            if out.join(DRAIN_GRACE_S) and err.join(DRAIN_GRACE_S):
                return
        log.warning("output_capture_abandoned", name=spec.name)
