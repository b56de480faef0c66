import time

import pytest
from fastapi.testclient import TestClient

from coderunner.api.app import create_app
from coderunner.services.job_service import JobService


@pytest.fixture
def client(settings):
    app = create_app(JobService(settings))
    with TestClient(app) as c:
        yield c


def _poll(client, job_id, within=15.0):
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        body = client.get("/status", params={"id": job_id}).json()
        if body["status"] in ("COMPLETED", "FAILED"):
            return body
        time.sleep(0.1)
    raise AssertionError(f"job {job_id} did not finish")


def test_run_then_poll_to_completion(client):
    res = client.post("/run", json={"language": "python", "code": "print('Hello from Backend Test')"})
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "queued"
    assert res.headers["X-Queue-Depth"] == str(body["queueDepth"])

    final = _poll(client, body["jobId"])
    assert final["status"] == "COMPLETED"
    assert final["output"].strip() == "Hello from Backend Test"
    assert final["error"] is None
    assert final["executionTime"].endswith("s")


def test_failed_job_reports_error(client):
    job_id = client.post("/run", json={"language": "python", "code": "1/0"}).json()["jobId"]
    final = _poll(client, job_id)
    assert final["status"] == "FAILED"
    assert "ZeroDivisionError" in final["error"]
    assert final["errorKind"] == "runtime"
    assert final["output"] is None


@pytest.mark.parametrize("payload", [
    {"language": "python"},
    {"code": "print(1)"},
    {"language": "brainfuck", "code": "+"},
    {"language": "python", "code": ""},
])
def test_run_validation_errors(client, payload):
    res = client.post("/run", json=payload)
    assert res.status_code == 400


def test_status_requires_id(client):
    assert client.get("/status").status_code == 400


def test_status_unknown_id(client):
    res = client.get("/status", params={"id": "nope"})
    assert res.status_code == 404
    assert res.json()["detail"] == "Job not found"


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["backend"] == "host"
