import shutil
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from coderunner.api.app import create_app
from coderunner.executor.base import ExecResult, ExecSpec, Executor
from coderunner.services.job_service import JobService
from coderunner.settings import Settings

PYTHON3 = shutil.which("python3")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedExecutor(Executor):
    """
    Interprets the submitted source as a tiny script so the worker pipeline
    can be driven without real toolchains:
      echo           stdout = stdin
      double         stdout = 2 * int(stdin) + newline
      compile-error  the compile step fails with a diagnostic
      sandbox-error  every attempt fails inside the sandbox
      oom / tle / crash   the matching failure on every run
    """

    name = "scripted"

    def __init__(self):
        self.calls = []

    def run(self, spec: ExecSpec) -> ExecResult:
        self.calls.append(spec)
        source = next(p for p in Path(spec.workdir).iterdir() if p.name.startswith(("main", "Main"))).read_text().strip()
        if source == "sandbox-error":
            return ExecResult.internal("image not found")
        if spec.export_to is not None:
            if source == "compile-error":
                return ExecResult(exit_code=1, stderr=b"main.c:1:10: error: expected ';' before '}' token\n")
            (spec.export_to / "main").write_text(source)
            return ExecResult(exit_code=0)
        if source == "oom":
            return ExecResult(exit_code=137, signal=9, oom_killed=True, duration_ms=5)
        if source == "tle":
            return ExecResult(exit_code=137, signal=9, timed_out=True, duration_ms=spec.timeout_ms)
        if source == "crash":
            return ExecResult(exit_code=139, signal=11, stderr=b"Segmentation fault\n")
        if source == "double":
            return ExecResult(exit_code=0, stdout=f"{int(spec.stdin) * 2}\n".encode(), duration_ms=3)
        return ExecResult(exit_code=0, stdout=spec.stdin, duration_ms=2)

    def run_calls(self):
        return [c for c in self.calls if c.export_to is None]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        work_dir=tmp_path / "work",
        worker_capacity=2,
        worker_address="test-worker",
        poll_interval_s=0.01,
        heartbeat_interval_s=0.05,
        ack_timeout_s=5,
        heartbeat_grace_s=30,
        sandbox_retries=1,
        executor="host",
        use_cgroups=False,
        isolate_network=False,
        log_json=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scripted_executor():
    return ScriptedExecutor()


@pytest.fixture
def service(settings, clock):
    svc = JobService(settings, clock=clock)
    yield svc
    svc.stop()


@pytest.fixture
def api(settings, service):
    app = create_app(settings, service=service, start_background=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def python3():
    if PYTHON3 is None:
        pytest.skip("python3 not available")
    return PYTHON3
