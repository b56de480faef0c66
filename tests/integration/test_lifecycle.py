import pytest

from coderunner.core.models import JobState
from coderunner.core.settings import Settings
from coderunner.executor.docker import DockerExecutor
from coderunner.services.job_service import JobService

pytestmark = pytest.mark.docker

HELLO = {
    "python": "print('Hello from Backend Test')",
    "javascript": "console.log('Hello from Backend Test')",
    "cpp": '#include <iostream>\nint main() { std::cout << "Hello from Backend Test" << std::endl; }\n',
    "go": 'package main\nimport "fmt"\nfunc main() { fmt.Println("Hello from Backend Test") }\n',
}


@pytest.fixture(scope="module")
def docker_service(tmp_path_factory):
    ok, detail = DockerExecutor().check_health()
    if not ok:
        pytest.skip(f"docker unavailable: {detail}")
    settings = Settings(
        backend="docker",
        workspace_root=tmp_path_factory.mktemp("ws"),
        pool_size=2,
        # image pulls and go/c++ builds are slow under 0.5 cpu
        timeout_s=120,
        memory_mb=256,
    )
    svc = JobService(settings).start()
    yield svc
    svc.stop()


@pytest.mark.parametrize("language", sorted(HELLO))
def test_hello_world_every_language(docker_service, language):
    jid = docker_service.submit(language, HELLO[language])
    job = docker_service.wait(jid, timeout=300)
    assert job.state == JobState.COMPLETED, job.error
    assert job.result.output.strip() == "Hello from Backend Test"


def test_no_network_inside_sandbox(docker_service):
    code = (
        "import socket\n"
        "socket.create_connection(('1.1.1.1', 53), timeout=3)\n"
    )
    job = docker_service.wait(docker_service.submit("python", code), timeout=300)
    assert job.state == JobState.FAILED
    assert "Error" in job.error.message


def test_host_filesystem_not_visible(docker_service, tmp_path):
    marker = tmp_path / "host-secret.txt"
    marker.write_text("secret")
    code = f"import os; print(os.path.exists({str(marker)!r}))"
    job = docker_service.wait(docker_service.submit("python", code), timeout=300)
    assert job.result.output.strip() == "False"
