from __future__ import annotations
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..core.errors import CodeRunnerError
from ..logging import setup_logging
from ..services.job_service import JobService
from ..settings import Settings, load_settings
from .schemas import (
    FailReq,
    HeartbeatReq,
    JobSpecOut,
    JobStatusRes,
    LanguageOut,
    OkRes,
    PollReq,
    PollRes,
    RegisterReq,
    RegisterRes,
    StatusReq,
    StatusRes,
    SubmitReq,
    SubmitRes,
    VerdictsReq,
    VerdictsRes,
    WorkerOut,
)

log = structlog.get_logger(component="api")


def create_app(
    settings: Optional[Settings] = None,
    *,
    service: Optional[JobService] = None,
    start_background: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    svc = service or JobService(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        svc.start(background=start_background)
        log.info("master_started", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            svc.stop()
            log.info("master_stopped")

    app = FastAPI(title="coderunner", lifespan=lifespan)
    app.state.service = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CodeRunnerError)
    async def _coderunner_error(_request: Request, exc: CodeRunnerError):
        if exc.status_code >= 500:
            log.error("request_failed", code=exc.code, error=str(exc))
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.code, "message": str(exc)})

    # --------- public ---------

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/submit", response_model=SubmitRes)
    def submit(req: SubmitReq):
        job_id = svc.submit(
            req.language,
            req.source_code,
            [tc.to_model() for tc in req.test_cases],
            time_limit_ms=req.time_limit_ms,
            memory_limit_mb=req.memory_limit_mb,
        )
        return {"job_id": job_id}

    @app.get("/status/{job_id}", response_model=JobStatusRes)
    def status(job_id: str):
        return svc.get_status(job_id)

    @app.get("/workers", response_model=List[WorkerOut])
    def workers():
        return svc.list_workers()

    @app.get("/languages", response_model=List[LanguageOut])
    def languages():
        return svc.list_languages()

    # --------- worker protocol ---------

    @app.post("/workers/register", response_model=RegisterRes)
    def register(req: RegisterReq):
        return svc.register_worker(req.address, req.capacity, req.languages, worker_id=req.worker_id)

    @app.post("/workers/{worker_id}/heartbeat", response_model=OkRes)
    def heartbeat(worker_id: str, req: HeartbeatReq):
        return svc.heartbeat(worker_id, req.active_jobs)

    @app.post("/workers/{worker_id}/poll", response_model=PollRes)
    def poll(worker_id: str, req: PollReq):
        specs = svc.poll(worker_id, req.max_jobs)
        return {"jobs": [JobSpecOut(**spec.to_dict()) for spec in specs]}

    @app.post("/workers/{worker_id}/jobs/{job_id}/status", response_model=StatusRes)
    def job_status(worker_id: str, job_id: str, req: StatusReq):
        return {"status": svc.report_status(worker_id, job_id, req.status, req.compiler_output)}

    @app.post("/workers/{worker_id}/jobs/{job_id}/verdicts", response_model=VerdictsRes)
    def job_verdicts(worker_id: str, job_id: str, req: VerdictsReq):
        verdicts = [v.to_model() for v in req.verdicts]
        return svc.report_verdicts(worker_id, job_id, verdicts, req.compiler_output)

    @app.post("/workers/{worker_id}/jobs/{job_id}/fail", response_model=StatusRes)
    def job_fail(worker_id: str, job_id: str, req: FailReq):
        return {"status": svc.report_failure(worker_id, job_id, req.reason)}

    @app.delete("/workers/{worker_id}", response_model=OkRes)
    def deregister(worker_id: str):
        svc.deregister(worker_id)
        return {"ok": True}

    return app


def main():
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
