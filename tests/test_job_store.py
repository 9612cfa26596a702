from concurrent.futures import ThreadPoolExecutor

import pytest

from coderunner.core.errors import (
    InvalidTransitionError,
    JobNotAssignedError,
    JobNotFoundError,
    UnknownTestCaseError,
)
from coderunner.core.models import JobStatus, Limits, Outcome, TestCase, Verdict
from coderunner.services.job_store import JobStore

CASES = [TestCase("a", "1\n", "2\n"), TestCase("b", "2\n", "4\n"), TestCase("c", "3\n", "6\n")]


@pytest.fixture
def store():
    s = JobStore("sqlite://")
    yield s
    s.close()


@pytest.fixture
def job(store):
    return store.create_job("python", "print(1)", CASES, Limits(2000, 128))


def _ok(case_id):
    return Verdict(case_id, Outcome.ACCEPTED, actual_output="x\n", exit_code=0, duration_ms=3)


def test_create_and_get(store, job):
    got = store.get(job.id)
    assert got.status is JobStatus.PENDING
    assert got.attempts == 0
    assert got.case_ids() == ["a", "b", "c"]
    assert got.to_spec().limits == Limits(2000, 128)
    assert [e.event for e in store.events(job.id)] == ["submitted"]


def test_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        store.get("missing")


def test_assignment_counts_attempts(store, job):
    rec = store.mark_assigned(job.id, "w1")
    assert rec.status is JobStatus.ASSIGNED
    assert rec.attempts == 1
    assert rec.assigned_worker == "w1"
    assert rec.to_spec().attempt == 1


def test_cannot_assign_twice(store, job):
    store.mark_assigned(job.id, "w1")
    with pytest.raises(InvalidTransitionError):
        store.mark_assigned(job.id, "w2")


def test_progress_through_compiling_and_running(store, job):
    store.mark_assigned(job.id, "w1")
    assert store.report_progress(job.id, "w1", JobStatus.COMPILING).status is JobStatus.COMPILING
    rec = store.report_progress(job.id, "w1", JobStatus.RUNNING, compiler_output="warning: unused")
    assert rec.status is JobStatus.RUNNING
    assert rec.compiler_output == "warning: unused"
    assert rec.started_at is not None
    with pytest.raises(InvalidTransitionError):
        store.report_progress(job.id, "w1", JobStatus.COMPILING)


def test_progress_from_other_worker_rejected(store, job):
    store.mark_assigned(job.id, "w1")
    with pytest.raises(JobNotAssignedError):
        store.report_progress(job.id, "w2", JobStatus.RUNNING)


def test_verdicts_complete_job_once(store, job):
    store.mark_assigned(job.id, "w1")
    assert store.record_verdicts(job.id, [_ok("b")], "w1") == (1, False)
    assert store.record_verdicts(job.id, [_ok("b")], "w1") == (0, False)
    assert store.record_verdicts(job.id, [_ok("c"), _ok("a"), _ok("a")], "w1") == (2, True)

    rec = store.get(job.id)
    assert rec.status is JobStatus.COMPLETED
    assert rec.finished_at is not None
    assert [v.test_case_id for v in store.verdicts(job.id)] == ["a", "b", "c"]
    # retransmission after completion is harmless
    assert store.record_verdicts(job.id, [_ok("a")], "w1") == (0, True)
    assert len(store.verdicts(job.id)) == 3


def test_unknown_test_case_rejected(store, job):
    store.mark_assigned(job.id, "w1")
    with pytest.raises(UnknownTestCaseError):
        store.record_verdicts(job.id, [_ok("a"), _ok("zzz")], "w1")
    assert store.verdicts(job.id) == []


def test_internal_error_never_stored(store, job):
    store.mark_assigned(job.id, "w1")
    with pytest.raises(ValueError):
        store.record_verdicts(job.id, [Verdict("a", Outcome.INTERNAL_ERROR)], "w1")


def test_verdicts_need_assignment(store, job):
    with pytest.raises(JobNotAssignedError):
        store.record_verdicts(job.id, [_ok("a")], "w1")
    store.mark_assigned(job.id, "w1")
    with pytest.raises(JobNotAssignedError):
        store.record_verdicts(job.id, [_ok("a")], "w2")


def test_release_requeues_then_fails(store, job):
    for attempt in (1, 2):
        store.mark_assigned(job.id, "w1")
        assert store.release(job.id, "ack_timeout", max_attempts=3) is JobStatus.PENDING
        assert store.get(job.id).attempts == attempt
    store.mark_assigned(job.id, "w1")
    assert store.release(job.id, "worker_lost", max_attempts=3) is JobStatus.FAILED

    rec = store.get(job.id)
    assert rec.status is JobStatus.FAILED
    assert rec.error == "infrastructure_error: worker_lost"
    assert rec.assigned_worker is None
    # terminal: nothing moves it any more
    assert store.release(job.id, "again", max_attempts=3) is None
    with pytest.raises(InvalidTransitionError):
        store.mark_assigned(job.id, "w1")
    assert store.record_verdicts(job.id, [_ok("a")]) == (0, False)
    assert [e.event for e in store.events(job.id)].count("retry") == 2


def test_release_ignores_other_worker(store, job):
    store.mark_assigned(job.id, "w1")
    assert store.release(job.id, "ack_timeout", 3, expect_worker="w2") is None
    assert store.get(job.id).status is JobStatus.ASSIGNED


def test_recovery_resets_in_flight(store, job):
    other = store.create_job("python", "print(2)", CASES[:1], Limits(2000, 128))
    store.mark_assigned(job.id, "w1")
    store.report_progress(job.id, "w1", JobStatus.RUNNING)
    assert [j.id for j in store.unfinished()] == [job.id, other.id]

    rec = store.reset_for_recovery(job.id)
    assert rec.status is JobStatus.PENDING
    assert rec.attempts == 1
    assert rec.assigned_worker is None


def test_file_database_survives_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'jobs.db'}"
    first = JobStore(url)
    job = first.create_job("cpp", "int main(){}", CASES[:1], Limits(1000, 64))
    first.close()

    second = JobStore(url)
    assert second.get(job.id).language == "cpp"
    assert second.count_by_status() == {"pending": 1}
    second.close()


def test_concurrent_verdicts_are_all_kept_once(tmp_path):
    store = JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    try:
        cases = [TestCase(str(i), f"{i}\n", f"{i}\n") for i in range(40)]
        job = store.create_job("python", "print(input())", cases, Limits(1000, 64))
        store.mark_assigned(job.id, "w1")
        store.report_progress(job.id, "w1", JobStatus.RUNNING)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(store.record_verdicts, job.id, [_ok(tc.id)], "w1") for tc in cases * 2]
            results = [f.result() for f in futures]

        assert sum(inserted for inserted, _ in results) == 40
        assert any(completed for _, completed in results)
        assert [v.test_case_id for v in store.verdicts(job.id)] == [tc.id for tc in cases]
        assert store.get(job.id).status is JobStatus.COMPLETED
    finally:
        store.close()
