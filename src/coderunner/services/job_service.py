from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
import time

import structlog

from ..core.errors import InvalidSubmissionError, JobNotAssignedError
from ..core.models import JobSpec, JobStatus, Limits, TestCase, Verdict
from ..core.utils import as_utc, clamp
from ..runners.registry import LanguageRegistry, load_registry
from ..settings import Settings
from .job_store import JobStore
from .registry import WorkerRegistry
from .scheduler import Scheduler

log = structlog.get_logger(component="job_service")


class JobService:
    """
    Master facade: submissions and status for clients, the worker protocol
    for agents. Ties together the store, the worker registry and the scheduler.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[JobStore] = None,
        languages: Optional[LanguageRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store or JobStore(settings.database_url)
        self.languages = languages or load_registry(settings.languages_file)
        self.workers = WorkerRegistry(clock=clock)
        self.scheduler = Scheduler(
            self.store,
            self.workers,
            max_attempts=settings.max_attempts,
            ack_timeout_s=settings.ack_timeout_s,
            heartbeat_grace_s=settings.heartbeat_grace_s,
            tick_s=settings.scheduler_tick_s,
            clock=clock,
        )

    # ---------- lifecycle ----------

    def start(self, background: bool = True) -> None:
        self.scheduler.recover()
        if background:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    # ---------- client surface ----------

    def _limits(self, time_limit_ms: Optional[int], memory_limit_mb: Optional[int]) -> Limits:
        s = self.settings
        t = s.default_time_limit_ms if time_limit_ms is None else time_limit_ms
        m = s.default_memory_limit_mb if memory_limit_mb is None else memory_limit_mb
        return Limits(
            time_limit_ms=clamp(int(t), s.min_time_limit_ms, s.max_time_limit_ms),
            memory_limit_mb=clamp(int(m), s.min_memory_limit_mb, s.max_memory_limit_mb),
        )

    def submit(
        self,
        language: str,
        source_code: str,
        test_cases: Sequence[TestCase],
        time_limit_ms: Optional[int] = None,
        memory_limit_mb: Optional[int] = None,
    ) -> str:
        profile = self.languages.get(language)
        if not source_code or not source_code.strip():
            raise InvalidSubmissionError("source_code must not be empty")
        if not test_cases:
            raise InvalidSubmissionError("test_cases must not be empty")
        ids = [tc.id for tc in test_cases]
        if len(set(ids)) != len(ids):
            raise InvalidSubmissionError("test case ids must be unique")

        limits = self._limits(time_limit_ms, memory_limit_mb)
        job = self.store.create_job(profile.language, source_code, test_cases, limits)
        self.scheduler.enqueue(job)
        log.info(
            "job_submitted",
            job_id=job.id,
            language=profile.language,
            test_cases=len(test_cases),
            time_limit_ms=limits.time_limit_ms,
            memory_limit_mb=limits.memory_limit_mb,
        )
        return job.id

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id)
        verdicts = self.store.verdicts(job_id)
        return {
            "job_id": job.id,
            "status": job.status.value,
            "language": job.language,
            "time_limit_ms": job.time_limit_ms,
            "memory_limit_mb": job.memory_limit_mb,
            "attempts": job.attempts,
            "error": job.error,
            "compiler_output": job.compiler_output,
            "created_at": as_utc(job.created_at),
            "started_at": as_utc(job.started_at) if job.started_at else None,
            "finished_at": as_utc(job.finished_at) if job.finished_at else None,
            "test_cases": len(job.test_cases),
            "verdicts": [v.to_verdict().to_dict() for v in verdicts],
        }

    def list_workers(self) -> List[Dict[str, Any]]:
        return self.workers.snapshot()

    def list_languages(self) -> List[Dict[str, Any]]:
        return [p.describe() for p in self.languages.profiles()]

    # ---------- worker protocol ----------

    def register_worker(
        self,
        address: str,
        capacity: int,
        languages: Optional[Iterable[str]] = None,
        worker_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        canonical = None
        if languages:
            canonical = [self.languages.get(name).language for name in languages]
        if worker_id and worker_id in self.workers:
            # a restarted agent: whatever the old incarnation held is lost
            self.scheduler.drop_worker(worker_id, "worker_restarted")
        info = self.workers.register(address, capacity, canonical, worker_id=worker_id)
        self.scheduler.notify()
        return {"worker_id": info.id, "heartbeat_interval_s": self.settings.heartbeat_interval_s}

    def heartbeat(self, worker_id: str, active_jobs: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        self.workers.heartbeat(worker_id, active_jobs)
        return {"ok": True}

    def poll(self, worker_id: str, max_jobs: int) -> List[JobSpec]:
        return self.scheduler.poll(worker_id, max(0, max_jobs))

    def _check_assignee(self, worker_id: str, job_id: str):
        self.workers.get(worker_id)
        job = self.store.get(job_id)
        if job.assigned_worker != worker_id or job.status in (JobStatus.PENDING, JobStatus.FAILED):
            raise JobNotAssignedError(f"job_not_assigned: {job_id} is not held by {worker_id}")
        return job

    def report_status(self, worker_id: str, job_id: str, status: JobStatus, compiler_output: Optional[str] = None) -> str:
        job = self._check_assignee(worker_id, job_id)
        if job.status is JobStatus.COMPLETED:
            return job.status.value
        job = self.store.report_progress(job_id, worker_id, status, compiler_output)
        log.info("job_progress", job_id=job_id, worker_id=worker_id, status=job.status.value)
        return job.status.value

    def report_verdicts(
        self,
        worker_id: str,
        job_id: str,
        verdicts: Sequence[Verdict],
        compiler_output: Optional[str] = None,
    ) -> Dict[str, Any]:
        job = self._check_assignee(worker_id, job_id)
        if job.status is JobStatus.COMPLETED:
            return {"recorded": 0, "completed": True}
        inserted, completed = self.store.record_verdicts(job_id, verdicts, worker_id, compiler_output)
        if completed:
            self.scheduler.finish(job_id, worker_id)
            log.info("job_completed", job_id=job_id, worker_id=worker_id)
        return {"recorded": inserted, "completed": completed}

    def report_failure(self, worker_id: str, job_id: str, reason: str) -> str:
        self._check_assignee(worker_id, job_id)
        status = self.scheduler.fail_attempt(job_id, worker_id, reason)
        return (status or self.store.get(job_id).status).value

    def deregister(self, worker_id: str) -> Dict[str, Any]:
        self.workers.get(worker_id)
        requeued = self.scheduler.drop_worker(worker_id, "worker_deregistered")
        return {"ok": True, "jobs": requeued}
