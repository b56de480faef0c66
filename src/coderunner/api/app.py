from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.errors import NotFound, ValidationError
from ..core.settings import load_settings
from ..logging import setup_logging
from ..services.job_service import JobService


# --------- Schemas ---------
class RunReq(BaseModel):
    language: Optional[str] = None
    code: Optional[str] = None


class RunRes(BaseModel):
    jobId: str
    status: str = "queued"
    queueDepth: int
    queueAlert: bool = False


class StatusRes(BaseModel):
    jobId: str
    status: str
    output: Optional[str] = None
    executionTime: Optional[str] = None
    error: Optional[str] = None
    errorKind: Optional[str] = None


def create_app(service: Optional[JobService] = None) -> FastAPI:
    """Build the HTTP adapter around a JobService (one is built from conf/runner.yaml if omitted)."""
    if service is None:
        setup_logging()
        service = JobService(load_settings())
    svc = service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc.start()
        try:
            yield
        finally:
            svc.stop()

    app = FastAPI(title="Code Runner", lifespan=lifespan)
    app.state.service = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=svc.settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        ok, detail = svc.health()
        return JSONResponse({"ok": ok, **detail}, status_code=200 if ok else 503)

    @app.post("/run", response_model=RunRes)
    def run(req: RunReq, response: Response):
        try:
            job_id = svc.submit(req.language, req.code)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        depth = svc.dispatcher.depth
        response.headers["X-Queue-Depth"] = str(depth)
        return RunRes(jobId=job_id, queueDepth=depth, queueAlert=svc.dispatcher.over_threshold)

    @app.get("/status", response_model=StatusRes)
    def status(id: Optional[str] = Query(default=None)):
        if not id:
            raise HTTPException(status_code=400, detail="Job ID required")
        try:
            return StatusRes(**svc.status(id))
        except NotFound:
            raise HTTPException(status_code=404, detail="Job not found")

    return app


def main() -> None:
    setup_logging()
    settings = load_settings()
    app = create_app(JobService(settings))
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
