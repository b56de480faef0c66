import stat
import sys
from pathlib import Path

import pytest

from coderunner.core.errors import InfrastructureError
from coderunner.core.languages import language_table
from coderunner.core.models import ExecutionRequest, Language, Limits
from coderunner.executor.docker import DockerExecutor
from coderunner.executor.host import UNSHARE_FLAGS, HostExecutor


def _request(ws: Path, language=Language.PYTHON, source="print('hi')", **limits):
    spec = language_table()[language]
    ws.mkdir(exist_ok=True)
    (ws / spec.source_name).write_text(source)
    return ExecutionRequest(
        job_id="job1",
        language=language,
        source=source,
        workspace=ws,
        source_file=ws / spec.source_name,
        limits=Limits(**{"timeout_s": 5, "memory_mb": 256, **limits}),
    )


def _fake_docker(tmp_path: Path, run_body: str) -> Path:
    """A stand-in docker CLI: `run` executes run_body, control commands are logged."""
    log = tmp_path / "docker.log"
    script = tmp_path / "docker"
    script.write_text(
        "#!/bin/sh\n"
        f'echo "$@" >> "{log}"\n'
        'case "$1" in\n'
        f"  run) {run_body} ;;\n"
        "  inspect) echo true ;;\n"
        "  info) echo 24.0.7 ;;\n"
        "  *) exit 0 ;;\n"
        "esac\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


def _log(tmp_path):
    return (tmp_path / "docker.log").read_text().splitlines()


# ---------- docker ----------

def test_docker_argv_is_isolated_and_structured(tmp_path):
    req = _request(tmp_path / "ws", source="print('a'); import os; os.system('rm -rf /')")
    spec = DockerExecutor().build_spec(req)
    argv = spec.argv
    assert argv[:2] == ["docker", "run"]
    assert argv[argv.index("--network") + 1] == "none"
    assert argv[argv.index("--memory") + 1] == "256m"
    assert argv[argv.index("--memory-swap") + 1] == "256m"
    assert argv[argv.index("--cpus") + 1] == "0.5"
    assert argv[argv.index("--cap-drop") + 1] == "ALL"
    assert argv[argv.index("--volume") + 1] == f"{req.workspace.resolve()}:/app:rw"
    assert argv[-4:] == ["python:3.9-slim", "python", "-u", "main.py"]
    assert "--rm" not in argv
    # source never travels on the command line
    assert not any("rm -rf" in a for a in argv)
    assert spec.name == "coderunner-job1"


def test_docker_compiled_language_compiles_and_runs_in_one_invocation(tmp_path):
    req = _request(tmp_path / "ws", language=Language.CPP, source="int main(){}")
    argv = DockerExecutor().build_spec(req).argv
    assert argv[-4:] == ["gcc:latest", "sh", "-c", "g++ -O2 -o /tmp/out main.cpp && /tmp/out"]


def test_docker_image_override(tmp_path):
    langs = language_table(images={"python": "python:3.12-alpine"})
    argv = DockerExecutor(langs).build_spec(_request(tmp_path / "ws")).argv
    assert "python:3.12-alpine" in argv


def test_docker_success_removes_container(tmp_path):
    docker = _fake_docker(tmp_path, "echo hello; exit 0")
    out = DockerExecutor(docker_bin=str(docker)).run(_request(tmp_path / "ws"))
    assert out.ok
    assert out.stdout == "hello\n"
    assert "rm --force coderunner-job1" in _log(tmp_path)


def test_docker_run_error_is_infrastructure(tmp_path):
    docker = _fake_docker(tmp_path, "echo 'Cannot connect to the Docker daemon' >&2; exit 125")
    with pytest.raises(InfrastructureError, match="Cannot connect"):
        DockerExecutor(docker_bin=str(docker)).run(_request(tmp_path / "ws"))
    assert "rm --force coderunner-job1" in _log(tmp_path)


def test_docker_oom_detected_via_inspect(tmp_path):
    docker = _fake_docker(tmp_path, "exit 137")
    out = DockerExecutor(docker_bin=str(docker)).run(_request(tmp_path / "ws"))
    assert out.oom_killed is True
    assert out.timed_out is False


def test_docker_nonzero_exit_is_plain_failure(tmp_path):
    docker = _fake_docker(tmp_path, "echo 'Traceback' >&2; exit 1")
    out = DockerExecutor(docker_bin=str(docker)).run(_request(tmp_path / "ws"))
    assert out.exit_code == 1
    assert out.oom_killed is False
    assert out.stderr == "Traceback\n"


def test_docker_timeout_kills_container_by_name(tmp_path):
    docker = _fake_docker(tmp_path, "exec sleep 30")
    out = DockerExecutor(docker_bin=str(docker)).run(_request(tmp_path / "ws", timeout_s=0.5))
    assert out.timed_out is True
    lines = _log(tmp_path)
    assert "kill coderunner-job1" in lines
    assert lines[-1] == "rm --force coderunner-job1"


def test_docker_missing_cli(tmp_path):
    ex = DockerExecutor(docker_bin=str(tmp_path / "nope"))
    with pytest.raises(InfrastructureError):
        ex.run(_request(tmp_path / "ws"))
    assert ex.check_health() == (False, "docker CLI not found")


def test_docker_health(tmp_path):
    docker = _fake_docker(tmp_path, "exit 0")
    ok, detail = DockerExecutor(docker_bin=str(docker)).check_health()
    assert ok is True
    assert "24.0.7" in detail


# ---------- host ----------

def _host():
    return HostExecutor(language_table(host_toolchains={"python": [sys.executable, "-u", "{file}"]}))


def test_host_runs_python(tmp_path):
    out = _host().run(_request(tmp_path / "ws", source="print('Hello from host')"))
    assert out.ok
    assert out.stdout == "Hello from host\n"


def test_host_environment_is_clean(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_TOKEN", "hunter2")
    src = "import os; print(os.environ.get('SECRET_TOKEN'))"
    out = _host().run(_request(tmp_path / "ws", source=src))
    assert out.stdout.strip() == "None"


def test_host_memory_error_is_resource_limit(tmp_path):
    src = "x = bytearray(1024 * 1024 * 1024)"
    out = _host().run(_request(tmp_path / "ws", source=src, memory_mb=128))
    assert out.exit_code != 0
    assert out.oom_killed is True


def test_host_runtime_error_is_not_oom(tmp_path):
    out = _host().run(_request(tmp_path / "ws", source="raise ValueError('bad')"))
    assert out.exit_code == 1
    assert out.oom_killed is False
    assert "ValueError: bad" in out.stderr


def test_host_unshare_prefix(tmp_path):
    ex = HostExecutor(unshare=True)
    argv = ex.build_spec(_request(tmp_path / "ws")).argv
    assert argv[0].endswith("unshare")
    assert argv[1:1 + len(UNSHARE_FLAGS)] == UNSHARE_FLAGS
    assert "--net" in argv
    assert argv[-3:] == ["python3", "-u", "main.py"]


def test_host_health_reports_missing_toolchains():
    ex = HostExecutor(language_table(host_toolchains={
        "go": ["definitely-not-a-go-binary", "run", "{file}"],
    }))
    ok, detail = ex.check_health()
    assert ok is True
    assert "go" in detail
