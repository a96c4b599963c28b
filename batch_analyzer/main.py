from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .backend import HttpAnalysisBackend
from .config import load_settings
from .job_registry import JobRegistry
from .models import JobStatus, WorkItem
from .orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)

settings = load_settings()

app = FastAPI(title="Batch Video Analyzer", version="1.0.0")

registry = JobRegistry()
backend = HttpAnalysisBackend(settings.backend_url, timeout=settings.http_timeout)
orchestrator = BatchOrchestrator(registry, backend, settings)


class VideoIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    title: str = ""

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Video id must not be blank")
        return value


class LaunchRequest(BaseModel):
    label: str | None = None
    videos: list[VideoIn] = Field(default_factory=list)


@app.on_event("startup")
async def on_startup() -> None:
    logger.info("Batch analyzer using backend %s", settings.backend_url)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await orchestrator.shutdown()
    await backend.aclose()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/api/jobs")
def list_jobs() -> JSONResponse:
    jobs = [item.to_dict() for item in orchestrator.observe_jobs()]
    running = sum(1 for item in jobs if item["status"] == JobStatus.RUNNING.value)
    return JSONResponse({"items": jobs, "running": running})


@app.post("/api/jobs")
async def create_job(request: LaunchRequest) -> JSONResponse:
    if len(request.videos) > settings.max_items:
        raise HTTPException(
            status_code=413,
            detail=f"Too many videos. Limit is {settings.max_items} per batch",
        )

    try:
        items = [WorkItem.from_video(video.model_dump()) for video in request.videos]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    record = orchestrator.launch_batch(items, label=request.label)
    if record is None:
        return JSONResponse({"job": None})
    return JSONResponse({"job": record.to_dict()}, status_code=201)


@app.get("/api/jobs/{job_id}")
def get_job(job_id: str) -> JSONResponse:
    record = registry.get(job_id)
    if not record:
        raise HTTPException(status_code=404, detail="Job not found")
    return JSONResponse(record.to_dict())


@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: str) -> JSONResponse:
    updated = orchestrator.cancel_job(job_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Job not found")
    return JSONResponse(updated.to_dict())


@app.delete("/api/jobs/{job_id}")
def dismiss_job(job_id: str) -> JSONResponse:
    record = registry.get(job_id)
    if not record:
        raise HTTPException(status_code=404, detail="Job not found")
    if record.status is JobStatus.RUNNING:
        raise HTTPException(status_code=409, detail="Job is still running")

    orchestrator.dismiss_job(job_id)
    return JSONResponse({"removed": job_id})
