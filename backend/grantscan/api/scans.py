"""Scan routes: start (SSE or JSON), inspect, cancel, and single-program scoring."""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from grantscan.api.deps import (
    HTTP_STATUS_BY_KIND,
    get_engine,
    get_job_registry,
    get_scan_runner,
)
from grantscan.api.schemas import ScanRequest, ScoreRequest
from grantscan.models.job import JobStatus, ScanJob
from grantscan.services.fit_scoring import FitScoringEngine
from grantscan.services.progress import ProgressChannel, stream_channel
from grantscan.services.resilience import ErrorKind
from grantscan.services.scan_runner import JobRegistry, ScanRunner

logger = logging.getLogger(__name__)

router = APIRouter()

JOB_ID_HEADER = "X-Scan-Job-Id"


def wants_event_stream(request: Request) -> bool:
    return "text/event-stream" in request.headers.get("accept", "")


@router.post("")
async def start_scan(
    body: ScanRequest,
    request: Request,
    runner: ScanRunner = Depends(get_scan_runner),
    registry: JobRegistry = Depends(get_job_registry),
):
    job = ScanJob()
    channel = ProgressChannel()
    company = body.company.to_profile()
    selection = body.to_selection()

    if wants_event_stream(request):
        task = asyncio.create_task(runner.run(job, company, selection, channel))
        registry.register(job, task)
        return StreamingResponse(
            stream_channel(channel, request.is_disconnected),
            media_type="text/event-stream",
            headers={
                JOB_ID_HEADER: job.job_id,
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    registry.register(job)
    try:
        await runner.run(job, company, selection, channel)
    finally:
        registry.forget(job.job_id)

    if job.status == JobStatus.failed:
        kind = ErrorKind(job.error_kind or ErrorKind.upstream.value)
        # Only the reasoning key can fail a job with an auth error.
        status_code = 403 if kind == ErrorKind.auth else HTTP_STATUS_BY_KIND.get(kind, 502)
        raise HTTPException(
            status_code=status_code,
            detail={"error": kind.value, "message": job.error_message, "jobId": job.job_id},
            headers={JOB_ID_HEADER: job.job_id},
        )
    payload = channel.terminal_data or runner.result_payload(job)
    return JSONResponse(content=payload, headers={JOB_ID_HEADER: job.job_id})


@router.get("/{job_id}")
async def get_scan(job_id: str, registry: JobRegistry = Depends(get_job_registry)):
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Scan job not found")
    return job.snapshot()


@router.delete("/{job_id}", status_code=202)
async def cancel_scan(job_id: str, registry: JobRegistry = Depends(get_job_registry)):
    job = registry.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Scan job not found")
    logger.info("Cancellation requested for scan %s", job_id)
    return job.snapshot()


@router.post("/score")
async def score_program(body: ScoreRequest, engine: FitScoringEngine = Depends(get_engine)):
    result = await engine.score(body.company.to_profile(), body.program.to_program())
    return result.as_dict()
