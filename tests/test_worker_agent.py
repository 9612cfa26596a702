from concurrent.futures import wait

import pytest

from coderunner.core.models import JobStatus, TestCase
from coderunner.runner.sandbox import SandboxRunner
from coderunner.runners.registry import load_registry
from coderunner.worker.agent import WorkerAgent, _ActiveJob
from coderunner.worker.client import MasterClient, MasterRejectedError
from coderunner.worker.workspace import WorkspaceStore

DOUBLING = [TestCase("1", "1\n", "2\n"), TestCase("2", "2\n", "4\n"), TestCase("3", "3\n", "6\n")]


@pytest.fixture
def agent(api, settings, scripted_executor):
    client = MasterClient("http://testserver", client=api)
    a = WorkerAgent(
        settings,
        client,
        SandboxRunner(scripted_executor),
        load_registry(),
        WorkspaceStore(settings.work_dir / "jobs"),
    )
    a.register()
    yield a
    a.stop(deregister=False)


def run_pending(agent, service):
    service.scheduler.schedule_once()
    futures = agent.poll_once()
    wait(futures)
    for fut in futures:
        fut.result()
    return futures


def test_registers_with_capacity_and_languages(agent, service):
    [w] = service.list_workers()
    assert w["id"] == agent.worker_id
    assert w["capacity"] == 2
    assert w["address"] == "test-worker"
    assert "rust" in w["languages"]


def test_three_case_doubling(agent, service, scripted_executor):
    job_id = service.submit("python", "double", DOUBLING)
    assert len(run_pending(agent, service)) == 1

    status = service.get_status(job_id)
    assert status["status"] == "completed"
    assert [v["outcome"] for v in status["verdicts"]] == ["accepted"] * 3
    assert [v["actual_output"] for v in status["verdicts"]] == ["2\n", "4\n", "6\n"]
    assert len(scripted_executor.run_calls()) == 3
    assert agent.active_jobs() == []
    assert agent.workspaces.active() == []


def test_wrong_answer_is_per_case(agent, service):
    job_id = service.submit("python", "echo", [TestCase("same", "hi\n", "hi\n"), TestCase("diff", "hi\n", "hi")])
    run_pending(agent, service)
    outcomes = {v["test_case_id"]: v["outcome"] for v in service.get_status(job_id)["verdicts"]}
    assert outcomes == {"same": "accepted", "diff": "wrong_answer"}


def test_compile_error_runs_nothing(agent, service, scripted_executor):
    job_id = service.submit("c", "compile-error", DOUBLING)
    run_pending(agent, service)

    status = service.get_status(job_id)
    assert status["status"] == "completed"
    assert [v["outcome"] for v in status["verdicts"]] == ["compile_error"] * 3
    assert "expected ';'" in status["compiler_output"]
    assert scripted_executor.run_calls() == []
    assert len(scripted_executor.calls) == 1


def test_compiled_job_reports_compiling_then_running(agent, service):
    job_id = service.submit("cpp", "double", DOUBLING)
    run_pending(agent, service)
    events = [e.event for e in service.store.events(job_id)]
    assert events.index("compiling") < events.index("running") < events.index("completed")
    assert service.get_status(job_id)["status"] == "completed"


def test_limit_outcomes(agent, service):
    ids = {src: service.submit("python", src, DOUBLING[:1]) for src in ("oom", "tle", "crash")}
    run_pending(agent, service)
    run_pending(agent, service)
    got = {src: service.get_status(job_id)["verdicts"][0]["outcome"] for src, job_id in ids.items()}
    assert got == {"oom": "memory_limit_exceeded", "tle": "time_limit_exceeded", "crash": "runtime_error"}


def test_sandbox_failure_goes_back_to_master(agent, service, scripted_executor, settings):
    job_id = service.submit("python", "sandbox-error", DOUBLING[:1])
    run_pending(agent, service)

    status = service.get_status(job_id)
    assert status["status"] == "pending"
    assert status["attempts"] == 1
    assert status["verdicts"] == []
    assert len(scripted_executor.calls) == 1 + settings.sandbox_retries
    retry = [e for e in service.store.events(job_id) if e.event == "retry"]
    assert retry[0].payload["reason"].startswith("sandbox_error")


def test_revoked_job_is_dropped(agent, service, scripted_executor):
    job_id = service.submit("python", "double", DOUBLING)
    service.scheduler.schedule_once()
    [spec] = agent.client.poll(1)
    # the master gives up on this attempt before the worker starts it
    service.scheduler.fail_attempt(job_id, agent.worker_id, "ack_timeout")

    active = _ActiveJob(spec)
    agent.execute_job(active)

    assert active.revoked.is_set()
    assert scripted_executor.calls == []
    assert service.get_status(job_id)["verdicts"] == []
    assert agent.workspaces.active() == []


def test_eviction_triggers_reregistration(agent, service):
    old_id = agent.worker_id
    service.scheduler.drop_worker(old_id, "worker_lost")
    assert service.list_workers() == []

    agent.heartbeat_once()

    [w] = service.list_workers()
    assert w["id"] == old_id


def test_heartbeat_reports_active_jobs(agent, service):
    job_id = service.submit("python", "double", DOUBLING[:1])
    service.scheduler.schedule_once()
    [spec] = agent.client.poll(1)
    with agent._lock:
        agent._active[job_id] = _ActiveJob(spec)
    agent.heartbeat_once()
    assert service.workers.reported_jobs(agent.worker_id) == {job_id}


def test_poll_respects_free_capacity(agent, service):
    for _ in range(3):
        service.submit("python", "echo", DOUBLING[:1])
    service.scheduler.schedule_once()
    assert len(service.scheduler.mailbox(agent.worker_id)) == 2
    futures = agent.poll_once()
    assert len(futures) == 2
    wait(futures)
    assert service.store.count_by_status() == {"completed": 2, "pending": 1}


def test_rejected_registration_stops_the_agent(api, settings, scripted_executor, service, tmp_path):
    languages_file = tmp_path / "languages.yaml"
    languages_file.write_text("zig:\n  source_file: main.zig\n  run_cmd: zig run main.zig\n  run_image: zig:latest\n")
    agent = WorkerAgent(
        settings,
        MasterClient("http://testserver", client=api),
        SandboxRunner(scripted_executor),
        load_registry(languages_file),
        WorkspaceStore(settings.work_dir / "jobs"),
    )
    with pytest.raises(MasterRejectedError, match="unknown_language"):
        agent.client.register("w", 1, ["zig"])

    agent.run_forever()

    assert service.list_workers() == []
    assert agent.client.worker_id is None
    agent.stop()
