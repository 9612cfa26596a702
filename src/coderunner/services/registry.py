from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set
import threading, time

import structlog

from ..core.errors import WorkerNotFoundError
from ..core.utils import new_worker_id

log = structlog.get_logger(component="registry")


@dataclass
class WorkerInfo:
    id: str
    address: str
    capacity: int
    available_slots: int
    languages: FrozenSet[str]
    registered_at: float
    last_heartbeat: float
    seq: int
    # job ids this worker holds a slot for (assigned, acknowledged or running)
    jobs: Set[str] = field(default_factory=set)
    # latest job list the worker itself reported in a heartbeat
    reported_jobs: Set[str] = field(default_factory=set)

    def supports(self, language: str) -> bool:
        return not self.languages or language in self.languages

    def snapshot(self, now: float) -> Dict[str, object]:
        return {
            "id": self.id,
            "address": self.address,
            "capacity": self.capacity,
            "available_slots": self.available_slots,
            "languages": sorted(self.languages),
            "active_jobs": sorted(self.jobs),
            "last_heartbeat_age_s": round(max(0.0, now - self.last_heartbeat), 3),
        }


class WorkerRegistry:
    """Live workers and their slot counters; every counter change happens under one lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._lock = threading.Lock()
        self._workers: Dict[str, WorkerInfo] = {}
        self._seq = 0

    def register(
        self,
        address: str,
        capacity: int,
        languages: Optional[Iterable[str]] = None,
        worker_id: Optional[str] = None,
    ) -> WorkerInfo:
        """Add a worker; re-registering an id replaces the old entry (its jobs are returned via `evict`)."""
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        now = self.clock()
        with self._lock:
            self._seq += 1
            info = WorkerInfo(
                id=worker_id or new_worker_id(),
                address=address,
                capacity=capacity,
                available_slots=capacity,
                languages=frozenset(languages or ()),
                registered_at=now,
                last_heartbeat=now,
                seq=self._seq,
            )
            self._workers[info.id] = info
        log.info("worker_registered", worker_id=info.id, address=address, capacity=capacity)
        return info

    def get(self, worker_id: str) -> WorkerInfo:
        with self._lock:
            info = self._workers.get(worker_id)
        if info is None:
            raise WorkerNotFoundError(f"worker_not_found: {worker_id}")
        return info

    def __contains__(self, worker_id: object) -> bool:
        with self._lock:
            return worker_id in self._workers

    def heartbeat(self, worker_id: str, reported_jobs: Optional[Iterable[str]] = None) -> WorkerInfo:
        with self._lock:
            info = self._workers.get(worker_id)
            if info is None:
                raise WorkerNotFoundError(f"worker_not_found: {worker_id}")
            info.last_heartbeat = self.clock()
            if reported_jobs is not None:
                info.reported_jobs = set(reported_jobs)
            return info

    def reserve_slot(self, language: str, job_id: str) -> Optional[str]:
        """Take one slot on the best eligible worker: most free slots, then earliest registration."""
        with self._lock:
            eligible = [w for w in self._workers.values() if w.available_slots > 0 and w.supports(language)]
            if not eligible:
                return None
            best = min(eligible, key=lambda w: (-w.available_slots, w.registered_at, w.seq))
            best.available_slots -= 1
            best.jobs.add(job_id)
            return best.id

    def release_slot(self, worker_id: str, job_id: str) -> bool:
        with self._lock:
            info = self._workers.get(worker_id)
            if info is None or job_id not in info.jobs:
                return False
            info.jobs.discard(job_id)
            info.available_slots = min(info.capacity, info.available_slots + 1)
            return True

    def expired(self, grace_s: float) -> List[str]:
        now = self.clock()
        with self._lock:
            return [w.id for w in self._workers.values() if now - w.last_heartbeat > grace_s]

    def evict(self, worker_id: str) -> Set[str]:
        """Drop the worker; returns the job ids it was holding."""
        with self._lock:
            info = self._workers.pop(worker_id, None)
        if info is None:
            return set()
        return set(info.jobs)

    def snapshot(self) -> List[Dict[str, object]]:
        now = self.clock()
        with self._lock:
            workers = sorted(self._workers.values(), key=lambda w: (w.registered_at, w.seq))
            return [w.snapshot(now) for w in workers]

    def reported_jobs(self, worker_id: str) -> Set[str]:
        with self._lock:
            info = self._workers.get(worker_id)
            return set(info.reported_jobs) if info else set()
