from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple
import heapq, itertools, threading, time

import structlog

from ..core.errors import CodeRunnerError, InvalidTransitionError, JobNotFoundError, StoreConflictError
from ..core.models import JobSpec, JobStatus
from ..core.utils import as_utc
from .job_store import JobRecord, JobStore
from .registry import WorkerRegistry

log = structlog.get_logger(component="scheduler")


@dataclass
class _Held:
    worker_id: str
    # ack deadline while in the mailbox, acknowledgement time once polled
    at: float
    acked: bool = False
    missing_since: Optional[float] = None


class Scheduler:
    """
    FIFO dispatch of pending jobs onto worker slots.

    Assigned jobs sit in the worker's mailbox until its next poll, which is the
    acknowledgement. Missed acknowledgements, lost workers and jobs a worker
    stops reporting all go through `fail_attempt`, which either requeues the
    job or fails it once `max_attempts` is spent.
    """

    def __init__(
        self,
        store: JobStore,
        registry: WorkerRegistry,
        *,
        max_attempts: int = 3,
        ack_timeout_s: float = 10.0,
        heartbeat_grace_s: float = 10.0,
        tick_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.registry = registry
        self.max_attempts = max_attempts
        self.ack_timeout_s = ack_timeout_s
        self.heartbeat_grace_s = heartbeat_grace_s
        self.tick_s = tick_s
        self.clock = clock

        self._cond = threading.Condition()
        self._heap: List[Tuple[datetime, int, str, str]] = []
        self._queued: set[str] = set()
        self._seq = itertools.count()
        self._mailboxes: Dict[str, Deque[str]] = {}
        self._held: Dict[str, _Held] = {}

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- queue ----------

    def enqueue(self, job: JobRecord) -> None:
        with self._cond:
            if job.id in self._queued:
                return
            heapq.heappush(self._heap, (as_utc(job.created_at), next(self._seq), job.id, job.language))
            self._queued.add(job.id)
            self._cond.notify_all()

    def queued(self) -> List[str]:
        with self._cond:
            return [entry[2] for entry in sorted(self._heap)]

    def recover(self) -> int:
        """Return every unfinished job in the store to the queue (master start)."""
        count = 0
        for job in self.store.unfinished():
            reset = self.store.reset_for_recovery(job.id)
            if reset is not None:
                self.enqueue(reset)
                count += 1
        if count:
            log.info("jobs_recovered", count=count)
        return count

    def notify(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # ---------- assignment ----------

    def schedule_once(self) -> int:
        """Assign as many queued jobs as free slots allow, oldest first."""
        assigned = 0
        with self._cond:
            skipped = []
            while self._heap:
                entry = heapq.heappop(self._heap)
                created_at, seq, job_id, language = entry
                worker_id = self.registry.reserve_slot(language, job_id)
                if worker_id is None:
                    skipped.append(entry)
                    continue
                try:
                    self.store.mark_assigned(job_id, worker_id)
                except (InvalidTransitionError, JobNotFoundError) as e:
                    # cancelled or already handled elsewhere: drop it
                    self.registry.release_slot(worker_id, job_id)
                    self._queued.discard(job_id)
                    log.warning("job_dropped_from_queue", job_id=job_id, error=str(e))
                    continue
                except StoreConflictError:
                    self.registry.release_slot(worker_id, job_id)
                    skipped.append(entry)
                    continue
                except Exception:
                    # keep the job queued and the slot free; the next tick retries
                    self.registry.release_slot(worker_id, job_id)
                    skipped.append(entry)
                    log.exception("job_assignment_failed", job_id=job_id, worker_id=worker_id)
                    continue
                self._queued.discard(job_id)
                self._mailboxes.setdefault(worker_id, deque()).append(job_id)
                self._held[job_id] = _Held(worker_id=worker_id, at=self.clock() + self.ack_timeout_s)
                assigned += 1
                log.info("job_assigned", job_id=job_id, worker_id=worker_id, language=language)
            for entry in skipped:
                heapq.heappush(self._heap, entry)
            if assigned:
                self._cond.notify_all()
        return assigned

    def poll(self, worker_id: str, max_jobs: int) -> List[JobSpec]:
        """Hand the worker up to `max_jobs` jobs from its mailbox; pulling acknowledges them."""
        self.registry.get(worker_id)
        specs: List[JobSpec] = []
        with self._cond:
            box = self._mailboxes.get(worker_id)
            while box and len(specs) < max_jobs:
                job_id = box.popleft()
                held = self._held.get(job_id)
                if held is None or held.worker_id != worker_id:
                    continue
                job = self.store.get(job_id)
                if job.status is not JobStatus.ASSIGNED or job.assigned_worker != worker_id:
                    continue
                held.acked = True
                held.at = self.clock()
                self.store.add_event(job_id, "acknowledged", worker_id)
                specs.append(job.to_spec())
        if specs:
            log.info("jobs_dispatched", worker_id=worker_id, job_ids=[s.job_id for s in specs])
        return specs

    def mailbox(self, worker_id: str) -> List[str]:
        with self._cond:
            return list(self._mailboxes.get(worker_id, ()))

    # ---------- completion / failure ----------

    def _forget(self, job_id: str) -> Optional[_Held]:
        held = self._held.pop(job_id, None)
        if held is not None:
            box = self._mailboxes.get(held.worker_id)
            if box and job_id in box:
                box.remove(job_id)
        return held

    def finish(self, job_id: str, worker_id: str) -> None:
        """The job completed on `worker_id`: free its slot."""
        with self._cond:
            self._forget(job_id)
            self.registry.release_slot(worker_id, job_id)
            self._cond.notify_all()

    def fail_attempt(self, job_id: str, worker_id: str, reason: str) -> Optional[JobStatus]:
        """End the current attempt; the job is requeued or, out of attempts, failed."""
        with self._cond:
            self.registry.release_slot(worker_id, job_id)
            status = self.store.release(job_id, reason, self.max_attempts, expect_worker=worker_id)
            held = self._held.get(job_id)
            if held is not None and held.worker_id == worker_id:
                self._forget(job_id)
            if status is JobStatus.PENDING:
                self.enqueue(self.store.get(job_id))
            self._cond.notify_all()
        if status is not None:
            log.warning("attempt_failed", job_id=job_id, worker_id=worker_id, reason=reason, status=status.value)
        return status

    def drop_worker(self, worker_id: str, reason: str) -> List[str]:
        """Evict a worker and retry whatever it held."""
        with self._cond:
            job_ids = self.registry.evict(worker_id)
            self._mailboxes.pop(worker_id, None)
            job_ids |= {job_id for job_id, held in self._held.items() if held.worker_id == worker_id}
            for job_id in sorted(job_ids):
                try:
                    status = self.store.release(job_id, reason, self.max_attempts, expect_worker=worker_id)
                except Exception:
                    # stays held by the gone worker until its deadline retries it
                    self._held.setdefault(job_id, _Held(worker_id=worker_id, at=self.clock() + self.ack_timeout_s))
                    log.exception("job_release_failed", job_id=job_id, worker_id=worker_id)
                    continue
                self._held.pop(job_id, None)
                if status is JobStatus.PENDING:
                    self.enqueue(self.store.get(job_id))
            self._cond.notify_all()
        log.warning("worker_dropped", worker_id=worker_id, reason=reason, jobs=sorted(job_ids))
        return sorted(job_ids)

    # ---------- deadlines ----------

    def check_timeouts(self) -> None:
        now = self.clock()
        for worker_id in self.registry.expired(self.heartbeat_grace_s):
            self.drop_worker(worker_id, "worker_lost")

        expired: List[Tuple[str, str, str]] = []
        with self._cond:
            for job_id, held in self._held.items():
                if not held.acked:
                    if now >= held.at:
                        expired.append((job_id, held.worker_id, "ack_timeout"))
                    continue
                # acknowledged: the worker must keep listing it in heartbeats
                if now - held.at < self.ack_timeout_s:
                    continue
                if job_id in self.registry.reported_jobs(held.worker_id):
                    held.missing_since = None
                elif held.missing_since is None:
                    held.missing_since = now
                elif now - held.missing_since >= self.ack_timeout_s:
                    expired.append((job_id, held.worker_id, "job_dropped"))
        for job_id, worker_id, reason in expired:
            try:
                self.fail_attempt(job_id, worker_id, reason)
            except CodeRunnerError as e:
                log.error("retry_failed", job_id=job_id, error=str(e))
            except Exception:
                log.exception("retry_failed", job_id=job_id)

    # ---------- background loop ----------

    def run_forever(self) -> None:
        log.info("scheduler_started")
        while not self._stop.is_set():
            try:
                self.check_timeouts()
                self.schedule_once()
            except CodeRunnerError as e:
                log.error("scheduler_tick_failed", error=str(e))
            except Exception:
                log.exception("scheduler_tick_failed")
            with self._cond:
                if not self._stop.is_set():
                    self._cond.wait(self.tick_s)
        log.info("scheduler_stopped")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.notify()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
