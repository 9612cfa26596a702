from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from ..core.models import JobSpec, JobStatus, Verdict

log = structlog.get_logger(component="master_client")


class MasterUnavailableError(Exception):
    """The master could not be reached or answered 5xx."""


class JobRevokedError(Exception):
    """The master no longer considers this worker the job's assignee (409)."""


class WorkerEvictedError(Exception):
    """The master does not know this worker any more (404)."""


class MasterRejectedError(Exception):
    """The master refused the request as malformed or unsupported (other 4xx)."""


class MasterClient:
    """Worker side of the worker protocol over httpx."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self._http = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.worker_id: Optional[str] = None

    def close(self):
        self._http.close()

    def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = self._http.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise MasterUnavailableError(f"{method} {path}: {e}") from e
        if resp.status_code == 404:
            detail = _detail(resp)
            if detail == "worker_not_found":
                raise WorkerEvictedError(path)
            raise JobRevokedError(f"{path}: {detail}")
        if resp.status_code == 409:
            raise JobRevokedError(f"{path}: {_detail(resp)}")
        if resp.status_code >= 500:
            raise MasterUnavailableError(f"{method} {path}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise MasterRejectedError(f"{method} {path}: HTTP {resp.status_code} {_message(resp)}")
        return resp.json()

    def _worker_path(self, suffix: str) -> str:
        if self.worker_id is None:
            raise WorkerEvictedError("not registered")
        return f"/workers/{self.worker_id}{suffix}"

    # ---------- protocol ----------

    def register(self, address: str, capacity: int, languages: Optional[List[str]] = None, worker_id: Optional[str] = None) -> Dict[str, Any]:
        body = {"worker_id": worker_id, "address": address, "capacity": capacity, "languages": languages}
        data = self._call("POST", "/workers/register", body)
        self.worker_id = data["worker_id"]
        return data

    def heartbeat(self, active_jobs: Iterable[str]) -> None:
        self._call("POST", self._worker_path("/heartbeat"), {"active_jobs": sorted(active_jobs)})

    def poll(self, max_jobs: int) -> List[JobSpec]:
        data = self._call("POST", self._worker_path("/poll"), {"max_jobs": max_jobs})
        return [JobSpec.from_dict(j) for j in data.get("jobs", [])]

    def report_status(self, job_id: str, status: JobStatus, compiler_output: Optional[str] = None) -> str:
        body = {"status": status.value, "compiler_output": compiler_output}
        return self._call("POST", self._worker_path(f"/jobs/{job_id}/status"), body)["status"]

    def report_verdicts(self, job_id: str, verdicts: Iterable[Verdict], compiler_output: Optional[str] = None) -> Dict[str, Any]:
        body = {"verdicts": [v.to_dict() for v in verdicts], "compiler_output": compiler_output}
        return self._call("POST", self._worker_path(f"/jobs/{job_id}/verdicts"), body)

    def report_failure(self, job_id: str, reason: str) -> str:
        return self._call("POST", self._worker_path(f"/jobs/{job_id}/fail"), {"reason": reason})["status"]

    def deregister(self) -> None:
        self._call("DELETE", self._worker_path(""))
        self.worker_id = None


def _detail(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("detail", ""))
    except ValueError:
        return resp.text


def _message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    return str(body.get("message") or body.get("detail", "")) if isinstance(body, dict) else str(body)
