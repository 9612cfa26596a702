from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
import threading, time

import structlog
from sqlalchemy import Column, JSON, UniqueConstraint, event
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..core.errors import (
    InvalidTransitionError,
    JobNotAssignedError,
    JobNotFoundError,
    StoreConflictError,
    UnknownTestCaseError,
)
from ..core.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    JobSpec,
    JobStatus,
    Limits,
    Outcome,
    TestCase,
    Verdict,
)
from ..core.utils import new_job_id, utc_now

log = structlog.get_logger(component="job_store")

WRITE_RETRIES = 5


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    language: str
    source_code: str
    test_cases: List[Dict[str, str]] = Field(sa_column=Column(JSON, nullable=False))
    time_limit_ms: int
    memory_limit_mb: int
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    attempts: int = 0
    assigned_worker: Optional[str] = None
    error: Optional[str] = None
    compiler_output: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def limits(self) -> Limits:
        return Limits(time_limit_ms=self.time_limit_ms, memory_limit_mb=self.memory_limit_mb)

    def case_ids(self) -> List[str]:
        return [tc["id"] for tc in self.test_cases]

    def to_spec(self) -> JobSpec:
        return JobSpec(
            job_id=self.id,
            language=self.language,
            source_code=self.source_code,
            test_cases=[TestCase.from_dict(tc) for tc in self.test_cases],
            limits=self.limits,
            attempt=self.attempts,
        )


class VerdictRecord(SQLModel, table=True):
    __tablename__ = "verdicts"
    __table_args__ = (UniqueConstraint("job_id", "test_case_id", name="uq_verdict_job_case"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="jobs.id", index=True)
    test_case_id: str
    outcome: str
    actual_output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    peak_memory_mb: Optional[float] = None
    stderr: str = ""
    worker_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utc_now)

    def to_verdict(self) -> Verdict:
        return Verdict(
            test_case_id=self.test_case_id,
            outcome=Outcome(self.outcome),
            actual_output=self.actual_output,
            exit_code=self.exit_code,
            duration_ms=self.duration_ms,
            peak_memory_mb=self.peak_memory_mb,
            stderr=self.stderr,
        )


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    event: str
    worker_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    timestamp: datetime = Field(default_factory=utc_now)


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


class JobStore:
    """
    Jobs, write-once verdicts and the job event trail.

    Every mutation of one job runs under that job's lock; the unique
    (job_id, test_case_id) constraint backs verdict idempotency across processes.
    """

    def __init__(self, url: str = "sqlite:///./coderunner.db"):
        self.url = url
        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if _is_memory_url(url):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", self._sqlite_pragmas)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

        # one shared connection under StaticPool: serialize access to it
        self._conn_lock = threading.RLock() if _is_memory_url(url) else None
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _sqlite_pragmas(self, dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        if not _is_memory_url(self.url):
            cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._conn_lock or nullcontext():
            with self.SessionLocal() as s:
                yield s

    def job_lock(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    def _forget_lock(self, job_id: str):
        with self._locks_guard:
            self._locks.pop(job_id, None)

    def _retrying(self, fn, job_id: str):
        """Run `fn(session)` in a fresh transaction, retrying transient conflicts."""
        for attempt in range(WRITE_RETRIES):
            try:
                with self.session() as s:
                    result = fn(s)
                    s.commit()
                    return result
            except (IntegrityError, OperationalError) as e:
                log.warning("store_conflict", job_id=job_id, attempt=attempt + 1, error=str(e.orig))
                time.sleep(0.01 * (2 ** attempt))
        raise StoreConflictError(f"store_conflict: {job_id}")

    @staticmethod
    def _event(s: Session, job_id: str, name: str, worker_id: Optional[str] = None, **payload):
        s.add(JobEvent(job_id=job_id, event=name, worker_id=worker_id, payload=payload))

    @staticmethod
    def _load(s: Session, job_id: str) -> JobRecord:
        job = s.get(JobRecord, job_id)
        if job is None:
            raise JobNotFoundError(f"job_not_found: {job_id}")
        return job

    @staticmethod
    def _move(job: JobRecord, to: JobStatus):
        if to not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(f"invalid_transition: {job.status.value} -> {to.value}")
        job.status = to

    # ---------- jobs ----------

    def create_job(self, language: str, source_code: str, test_cases: Iterable[TestCase], limits: Limits) -> JobRecord:
        job = JobRecord(
            id=new_job_id(),
            language=language,
            source_code=source_code,
            test_cases=[tc.to_dict() for tc in test_cases],
            time_limit_ms=limits.time_limit_ms,
            memory_limit_mb=limits.memory_limit_mb,
        )

        def _create(s: Session):
            s.add(job)
            self._event(s, job.id, "submitted", language=language, test_cases=len(job.test_cases))
            return job

        return self._retrying(_create, job.id)

    def get(self, job_id: str) -> JobRecord:
        with self.session() as s:
            return self._load(s, job_id)

    def verdicts(self, job_id: str) -> List[VerdictRecord]:
        """Recorded verdicts in the job's test-case order."""
        with self.session() as s:
            job = self._load(s, job_id)
            rows = s.exec(select(VerdictRecord).where(VerdictRecord.job_id == job_id)).all()
        order = {case_id: i for i, case_id in enumerate(job.case_ids())}
        return sorted(rows, key=lambda r: order.get(r.test_case_id, len(order)))

    def events(self, job_id: str) -> List[JobEvent]:
        with self.session() as s:
            stmt = select(JobEvent).where(JobEvent.job_id == job_id).order_by(JobEvent.id)
            return list(s.exec(stmt).all())

    def unfinished(self) -> List[JobRecord]:
        with self.session() as s:
            stmt = (
                select(JobRecord)
                .where(JobRecord.status.notin_(list(TERMINAL_STATUSES)))
                .order_by(JobRecord.created_at)
            )
            return list(s.exec(stmt).all())

    def count_by_status(self) -> Dict[str, int]:
        with self.session() as s:
            rows = s.exec(select(JobRecord.status)).all()
        counts: Dict[str, int] = {}
        for st in rows:
            key = st.value if isinstance(st, JobStatus) else str(st)
            counts[key] = counts.get(key, 0) + 1
        return counts

    # ---------- transitions ----------

    def mark_assigned(self, job_id: str, worker_id: str) -> JobRecord:
        """pending -> assigned; counts one attempt."""

        def _assign(s: Session):
            job = self._load(s, job_id)
            self._move(job, JobStatus.ASSIGNED)
            job.attempts += 1
            job.assigned_worker = worker_id
            job.error = None
            s.add(job)
            self._event(s, job_id, "assigned", worker_id, attempt=job.attempts)
            return job

        with self.job_lock(job_id):
            return self._retrying(_assign, job_id)

    def report_progress(self, job_id: str, worker_id: str, status: JobStatus, compiler_output: Optional[str] = None) -> JobRecord:
        """Worker-driven assigned -> compiling -> running."""
        if status not in (JobStatus.COMPILING, JobStatus.RUNNING):
            raise InvalidTransitionError(f"invalid_transition: workers may only report compiling/running, got {status.value}")

        def _progress(s: Session):
            job = self._load(s, job_id)
            if job.assigned_worker != worker_id or job.status in TERMINAL_STATUSES or job.status is JobStatus.PENDING:
                raise JobNotAssignedError(f"job_not_assigned: {job_id} is not held by {worker_id}")
            if job.status is not status:
                self._move(job, status)
                if job.started_at is None:
                    job.started_at = utc_now()
                self._event(s, job_id, status.value, worker_id)
            if compiler_output is not None:
                job.compiler_output = compiler_output
            s.add(job)
            return job

        with self.job_lock(job_id):
            return self._retrying(_progress, job_id)

    def release(self, job_id: str, reason: str, max_attempts: int, expect_worker: Optional[str] = None) -> Optional[JobStatus]:
        """Give an assigned job back: pending again, or failed once attempts are spent.

        Returns the new status, or None when the job is terminal, already
        pending, or no longer held by `expect_worker`.
        """

        def _release(s: Session):
            job = self._load(s, job_id)
            if job.status in TERMINAL_STATUSES or job.status is JobStatus.PENDING:
                return None
            if expect_worker is not None and job.assigned_worker != expect_worker:
                return None
            worker_id = job.assigned_worker
            job.assigned_worker = None
            if job.attempts >= max_attempts:
                self._move(job, JobStatus.FAILED)
                job.error = f"infrastructure_error: {reason}"
                job.finished_at = utc_now()
                self._event(s, job_id, "failed", worker_id, reason=reason, attempts=job.attempts)
            else:
                self._move(job, JobStatus.PENDING)
                self._event(s, job_id, "retry", worker_id, reason=reason, attempts=job.attempts)
            s.add(job)
            return job.status

        with self.job_lock(job_id):
            status = self._retrying(_release, job_id)
        if status is JobStatus.FAILED:
            self._forget_lock(job_id)
        return status

    def reset_for_recovery(self, job_id: str) -> Optional[JobRecord]:
        """Master restart: any in-flight job goes back to pending without spending an attempt."""

        def _reset(s: Session):
            job = self._load(s, job_id)
            if job.status in TERMINAL_STATUSES:
                return None
            if job.status is not JobStatus.PENDING:
                self._event(s, job_id, "recovered", job.assigned_worker, previous=job.status.value)
                job.status = JobStatus.PENDING
                job.assigned_worker = None
                s.add(job)
            return job

        with self.job_lock(job_id):
            return self._retrying(_reset, job_id)

    # ---------- verdicts ----------

    def record_verdicts(
        self,
        job_id: str,
        verdicts: Iterable[Verdict],
        worker_id: Optional[str] = None,
        compiler_output: Optional[str] = None,
    ) -> Tuple[int, bool]:
        """Insert verdicts once per test case; returns (inserted, completed).

        Duplicates are ignored, so retransmissions are harmless. The job turns
        completed when every test case has a verdict.
        """
        verdicts = list(verdicts)
        for v in verdicts:
            if v.outcome is Outcome.INTERNAL_ERROR:
                raise ValueError("internal_error is not a recordable verdict")

        def _record(s: Session):
            job = self._load(s, job_id)
            if job.status is JobStatus.COMPLETED:
                return 0, True
            if job.status is JobStatus.FAILED:
                return 0, False
            if job.status is JobStatus.PENDING or (worker_id is not None and job.assigned_worker != worker_id):
                raise JobNotAssignedError(f"job_not_assigned: {job_id} is not held by {worker_id}")

            valid = job.case_ids()
            for v in verdicts:
                if v.test_case_id not in valid:
                    raise UnknownTestCaseError(f"unknown_test_case: {v.test_case_id}")

            stmt = select(VerdictRecord.test_case_id).where(VerdictRecord.job_id == job_id)
            seen = set(s.exec(stmt).all())
            inserted = 0
            for v in verdicts:
                if v.test_case_id in seen:
                    continue
                seen.add(v.test_case_id)
                s.add(
                    VerdictRecord(
                        job_id=job_id,
                        test_case_id=v.test_case_id,
                        outcome=v.outcome.value,
                        actual_output=v.actual_output,
                        exit_code=v.exit_code,
                        duration_ms=v.duration_ms,
                        peak_memory_mb=v.peak_memory_mb,
                        stderr=v.stderr,
                        worker_id=worker_id,
                    )
                )
                inserted += 1
            if compiler_output is not None:
                job.compiler_output = compiler_output

            completed = len(seen) >= len(valid)
            if completed:
                self._move(job, JobStatus.COMPLETED)
                job.finished_at = utc_now()
                self._event(s, job_id, "completed", worker_id, attempts=job.attempts)
            s.add(job)
            return inserted, completed

        with self.job_lock(job_id):
            inserted, completed = self._retrying(_record, job_id)
        if completed:
            self._forget_lock(job_id)
        return inserted, completed

    def add_event(self, job_id: str, name: str, worker_id: Optional[str] = None, **payload):
        def _add(s: Session):
            self._event(s, job_id, name, worker_id, **payload)

        self._retrying(_add, job_id)

    def close(self):
        self.engine.dispose()
