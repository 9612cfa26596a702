from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar
import signal, threading

import structlog

from ..core.errors import UnknownLanguageError
from ..core.models import JobSpec, JobStatus, Outcome, TestCase, Verdict
from ..logging import setup_logging
from ..runner.sandbox import CompileResult, SandboxRunner, build_executor
from ..runners.base import LanguageProfile
from ..runners.registry import LanguageRegistry, load_registry
from ..settings import Settings, load_settings
from .client import JobRevokedError, MasterClient, MasterRejectedError, MasterUnavailableError, WorkerEvictedError
from .workspace import WorkspaceStore

log = structlog.get_logger(component="worker")

T = TypeVar("T")


@dataclass
class _ActiveJob:
    spec: JobSpec
    revoked: threading.Event = field(default_factory=threading.Event)
    futures: List[Future] = field(default_factory=list)

    def revoke(self):
        self.revoked.set()
        for fut in self.futures:
            fut.cancel()


class WorkerAgent:
    """
    Pulls jobs from the master and runs them through the sandbox.

    Concurrency is bounded by one BoundedSemaphore of `capacity` slots; a
    compile and every test case each hold one slot while their sandbox runs.
    """

    def __init__(
        self,
        settings: Settings,
        client: MasterClient,
        runner: SandboxRunner,
        languages: LanguageRegistry,
        workspaces: WorkspaceStore,
    ):
        self.settings = settings
        self.client = client
        self.runner = runner
        self.languages = languages
        self.workspaces = workspaces
        self.capacity = settings.worker_capacity

        self.slots = threading.BoundedSemaphore(self.capacity)
        self._jobs_pool = ThreadPoolExecutor(max_workers=self.capacity, thread_name_prefix="job")
        self._cases_pool = ThreadPoolExecutor(max_workers=self.capacity, thread_name_prefix="case")
        self._lock = threading.Lock()
        self._active: Dict[str, _ActiveJob] = {}
        self._stop = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None
        self.worker_id: Optional[str] = settings.worker_id
        self.heartbeat_interval_s = settings.heartbeat_interval_s

    # ---------- registration / heartbeat ----------

    def register(self) -> str:
        data = self.client.register(
            self.settings.worker_address,
            self.capacity,
            self.languages.languages(),
            worker_id=self.worker_id,
        )
        self.worker_id = data["worker_id"]
        self.heartbeat_interval_s = float(data.get("heartbeat_interval_s") or self.heartbeat_interval_s)
        log.info("worker_registered", worker_id=self.worker_id, capacity=self.capacity, languages=self.languages.languages())
        return self.worker_id

    def _register_until_stopped(self) -> bool:
        while not self._stop.is_set():
            try:
                self.register()
                return True
            except MasterUnavailableError as e:
                log.warning("register_failed", error=str(e))
                self._stop.wait(self.settings.poll_interval_s)
            except MasterRejectedError as e:
                # the same registration is refused every time; give up
                log.error("register_rejected", error=str(e))
                self._stop.set()
        return False

    def active_jobs(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def heartbeat_once(self) -> None:
        try:
            self.client.heartbeat(self.active_jobs())
        except WorkerEvictedError:
            log.warning("worker_evicted")
            self.revoke_all()
            self._register_until_stopped()
        except (MasterUnavailableError, MasterRejectedError) as e:
            log.warning("heartbeat_failed", error=str(e))

    def _heartbeat_loop(self):
        while not self._stop.wait(self.heartbeat_interval_s):
            self.heartbeat_once()

    def revoke_all(self):
        with self._lock:
            jobs = list(self._active.values())
        for job in jobs:
            job.revoke()

    # ---------- polling ----------

    def poll_once(self) -> List[Future]:
        free = self.capacity - len(self.active_jobs())
        if free <= 0:
            return []
        try:
            specs = self.client.poll(free)
        except WorkerEvictedError:
            log.warning("worker_evicted")
            self.revoke_all()
            self._register_until_stopped()
            return []
        except (MasterUnavailableError, MasterRejectedError) as e:
            log.warning("poll_failed", error=str(e))
            return []
        futures = []
        for spec in specs:
            active = _ActiveJob(spec)
            with self._lock:
                self._active[spec.job_id] = active
            futures.append(self._jobs_pool.submit(self.execute_job, active))
        return futures

    def run_forever(self):
        if not self._register_until_stopped():
            return
        self._heartbeat_thread = threading.Thread(target=self._heartbeat_loop, name="heartbeat", daemon=True)
        self._heartbeat_thread.start()
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.settings.poll_interval_s)

    def request_stop(self):
        self._stop.set()

    def stop(self, deregister: bool = True):
        self._stop.set()
        self.revoke_all()
        self._jobs_pool.shutdown(wait=True, cancel_futures=True)
        self._cases_pool.shutdown(wait=True, cancel_futures=True)
        if deregister and self.client.worker_id is not None:
            try:
                self.client.deregister()
            except (MasterUnavailableError, MasterRejectedError, WorkerEvictedError) as e:
                log.warning("deregister_failed", error=str(e))
        self.runner.executor.close()
        log.info("worker_stopped")

    # ---------- job execution ----------

    def _send(self, fn: Callable[[], T], attempts: int = 3) -> T:
        """Retry a master call through transient outages; 404/409 propagate at once."""
        for attempt in range(1, attempts):
            try:
                return fn()
            except MasterUnavailableError as e:
                log.warning("master_call_retry", attempt=attempt, error=str(e))
                self._stop.wait(self.settings.poll_interval_s * attempt)
        return fn()

    def _compile(self, profile: LanguageProfile, workspace: Path) -> CompileResult:
        result = CompileResult(ok=False)
        for attempt in range(1 + self.settings.sandbox_retries):
            with self.slots:
                result = self.runner.compile(profile, workspace)
            if result.internal_error is None:
                return result
            log.warning("compile_sandbox_error", attempt=attempt + 1, error=result.internal_error)
        return result

    def _run_case(self, job: _ActiveJob, profile: LanguageProfile, workspace: Path, tc: TestCase) -> Optional[Verdict]:
        verdict: Optional[Verdict] = None
        for attempt in range(1 + self.settings.sandbox_retries):
            with self.slots:
                if job.revoked.is_set():
                    return None
                verdict = self.runner.run_test_case(profile, workspace, tc, job.spec.limits)
            if verdict.outcome is not Outcome.INTERNAL_ERROR:
                return verdict
            log.warning("sandbox_error", job_id=job.spec.job_id, test_case_id=tc.id, attempt=attempt + 1, error=verdict.stderr)
        return verdict

    def execute_job(self, job: _ActiveJob) -> None:
        spec = job.spec
        jlog = log.bind(job_id=spec.job_id, attempt=spec.attempt)
        workspace: Optional[Path] = None
        try:
            try:
                profile = self.languages.get(spec.language)
            except UnknownLanguageError:
                self._send(lambda: self.client.report_failure(spec.job_id, f"unsupported_language: {spec.language}"))
                return
            workspace = self.workspaces.create(spec.job_id, spec.attempt, profile.source_file, spec.source_code)

            compiler_output: Optional[str] = None
            if profile.compiles:
                self._send(lambda: self.client.report_status(spec.job_id, JobStatus.COMPILING))
                compiled = self._compile(profile, workspace)
                if compiled.internal_error is not None:
                    self._send(lambda: self.client.report_failure(spec.job_id, f"sandbox_error: {compiled.internal_error}"))
                    return
                compiler_output = compiled.output or None
                if not compiled.ok:
                    verdicts = [Verdict.compile_error(tc.id, compiled.output, compiled.exit_code) for tc in spec.test_cases]
                    self._send(lambda: self.client.report_verdicts(spec.job_id, verdicts, compiler_output=compiled.output))
                    jlog.info("compile_failed", exit_code=compiled.exit_code)
                    return

            self._send(lambda: self.client.report_status(spec.job_id, JobStatus.RUNNING, compiler_output))
            job.futures = [self._cases_pool.submit(self._run_case, job, profile, workspace, tc) for tc in spec.test_cases]
            for fut in as_completed(job.futures):
                if job.revoked.is_set():
                    break
                if fut.cancelled():
                    continue
                verdict = fut.result()
                if verdict is None:
                    continue
                if verdict.outcome is Outcome.INTERNAL_ERROR:
                    job.revoke()
                    self._send(lambda: self.client.report_failure(spec.job_id, f"sandbox_error: {verdict.stderr}"))
                    return
                self._send(lambda: self.client.report_verdicts(spec.job_id, [verdict]))
            if not job.revoked.is_set():
                jlog.info("job_finished", test_cases=len(spec.test_cases))
        except JobRevokedError as e:
            jlog.warning("job_revoked", reason=str(e))
            job.revoke()
        except WorkerEvictedError:
            jlog.warning("job_revoked", reason="worker_evicted")
            job.revoke()
        except MasterUnavailableError as e:
            # the master retries the job once it stops showing up in heartbeats
            jlog.error("master_unreachable", error=str(e))
            job.revoke()
        except MasterRejectedError as e:
            jlog.error("report_rejected", error=str(e))
            job.revoke()
        finally:
            for fut in job.futures:
                fut.cancel()
            wait(job.futures)
            if workspace is not None:
                self.workspaces.remove(workspace)
            with self._lock:
                self._active.pop(spec.job_id, None)


def build_agent(settings: Settings) -> WorkerAgent:
    executor = build_executor(settings)
    languages = load_registry(settings.languages_file).subset(settings.worker_languages)
    return WorkerAgent(
        settings,
        MasterClient(settings.master_url, timeout=settings.request_timeout_s),
        SandboxRunner.from_settings(settings, executor),
        languages,
        WorkspaceStore(settings.work_dir / "jobs"),
    )


def main():
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_json)
    agent = build_agent(settings)

    def _shutdown(signum, _frame):
        log.info("worker_signal", signal=signum)
        agent.request_stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        agent.run_forever()
    finally:
        agent.stop()


if __name__ == "__main__":
    main()
