"""
Job endpoints.

Pipeline job and legacy job creation, status, regeneration and publishing
overrides. Creation only validates and persists; the worker runs the steps.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field

from modules.batch_coordinator import BatchCoordinator
from shared.errors import NotFoundError
from shared.job_store import JobStore
from shared.logging import get_logger
from shared.models.job import Job, PipelineJob, PublishOverrides
from shared.models.steps import PipelineStep
from shared.validation import validate_pipeline_request, validate_url
from api_gateway.dependencies import Enqueue, get_batch_coordinator, get_enqueue, get_store

logger = get_logger(__name__)

router = APIRouter()


class CreatePipelineJobRequest(BaseModel):
    name: str = Field(default="Untitled job", min_length=1, max_length=200)
    pipeline: List[PipelineStep]
    source_url: Optional[str] = None
    video_url: Optional[str] = None
    model_id: Optional[str] = None
    overrides: Optional[PublishOverrides] = None


class CreateLegacyJobRequest(BaseModel):
    video_url: str
    image_url: str
    prompt: Optional[str] = None


class RegenerateRequest(BaseModel):
    image_url: Optional[str] = None


def _job_summary(job: PipelineJob) -> dict:
    return {"job_id": job.id, "status": job.status, "total_steps": job.total_steps}


@router.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
async def create_pipeline_job(
    request: CreatePipelineJobRequest,
    store: JobStore = Depends(get_store),
    enqueue: Enqueue = Depends(get_enqueue)
):
    """
    Create a pipeline job and queue it for the worker.

    Returns:
        {"job_id", "status": "queued", "total_steps"}

    Raises:
        400: Invalid pipeline (no enabled step, missing inputs, bad URLs)
    """
    steps = validate_pipeline_request(request.pipeline, request.source_url, request.video_url)
    job = await store.create_pipeline_job(PipelineJob(
        id=str(uuid.uuid4()),
        name=request.name,
        status="queued",
        pipeline=request.pipeline,
        total_steps=len(steps),
        source_url=request.source_url,
        video_url=request.video_url,
        model_id=request.model_id,
        overrides=request.overrides,
    ))
    await enqueue("run_pipeline_job", {"job_id": job.id})
    logger.info("Pipeline job created", extra={"job_id": job.id, "total_steps": job.total_steps})
    return _job_summary(job)


@router.get("/jobs/{job_id}")
async def get_pipeline_job(
    job_id: str = Path(...),
    store: JobStore = Depends(get_store)
):
    """Current state of a pipeline job, including its step results."""
    job = await store.get_pipeline_job(job_id)
    if job is None:
        raise NotFoundError(f"Pipeline job {job_id} not found", job_id=job_id)
    return job.model_dump(mode="json")


@router.post("/jobs/{job_id}/regenerate", status_code=status.HTTP_202_ACCEPTED)
async def regenerate_pipeline_job(
    request: RegenerateRequest,
    job_id: str = Path(...),
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Queue a new job cloned from an existing one; the original is untouched."""
    if request.image_url:
        validate_url(request.image_url, "image_url")
    job = await coordinator.regenerate_job(job_id, request.image_url)
    return dict(_job_summary(job), regenerated_from=job.regenerated_from, batch_id=job.batch_id)


@router.patch("/jobs/{job_id}/overrides")
async def update_job_overrides(
    overrides: PublishOverrides,
    job_id: str = Path(...),
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    job = await coordinator.update_overrides(job_id, overrides)
    return {"job_id": job.id, "overrides": job.overrides.model_dump() if job.overrides else None}


@router.post("/legacy-jobs", status_code=status.HTTP_202_ACCEPTED)
async def create_legacy_job(
    request: CreateLegacyJobRequest,
    store: JobStore = Depends(get_store),
    enqueue: Enqueue = Depends(get_enqueue)
):
    """Create a single-step motion-control job."""
    job = await store.create_job(Job(
        id=str(uuid.uuid4()),
        status="queued",
        video_url=validate_url(request.video_url, "video_url"),
        image_url=validate_url(request.image_url, "image_url"),
        prompt=request.prompt,
    ))
    await enqueue("run_job", {"job_id": job.id})
    logger.info("Legacy job created", extra={"job_id": job.id})
    return {"job_id": job.id, "status": job.status}


@router.get("/legacy-jobs/{job_id}")
async def get_legacy_job(
    job_id: str = Path(...),
    store: JobStore = Depends(get_store)
):
    job = await store.get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found", job_id=job_id)
    return job.model_dump(mode="json")
