"""
Publishing endpoints.

Publish one completed job, or every completed child of a master batch, to
distribution accounts.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from modules.publisher import Publisher
from shared.errors import NotFoundError
from shared.job_store import JobStore
from shared.logging import get_logger
from shared.models.job import PublishMode
from shared.models.post import PublishTarget
from api_gateway.dependencies import Enqueue, get_enqueue, get_job_publisher, get_store

logger = get_logger(__name__)

router = APIRouter()


class PublishJobRequest(BaseModel):
    # Explicit targets win; otherwise account_ids filters the model's linked accounts
    targets: Optional[List[PublishTarget]] = None
    account_ids: Optional[List[str]] = None
    publish_mode: Optional[PublishMode] = None
    caption: Optional[str] = None
    scheduled_for: Optional[str] = None
    timezone: Optional[str] = None
    force: bool = False
    created_by: Optional[str] = None


class PublishMasterBatchRequest(BaseModel):
    job_ids: Optional[List[str]] = None
    force: bool = False
    # Hand the run to the worker instead of waiting for the summary
    background: bool = False


@router.post("/jobs/{job_id}/publish")
async def publish_job(
    request: PublishJobRequest,
    job_id: str = Path(...),
    publisher: Publisher = Depends(get_job_publisher),
    store: JobStore = Depends(get_store)
):
    """
    Publish a completed job.

    Returns:
        {"job_id", "status": posted|skipped|failed, "targets": [...], ...}

    Raises:
        400: Job not completed, no output, or schedule mode without a time
        404: Unknown job
    """
    targets = request.targets
    if targets is None and request.account_ids:
        job = await store.get_pipeline_job(job_id)
        if job is None:
            raise NotFoundError(f"Pipeline job {job_id} not found", job_id=job_id)
        targets = await publisher.resolve_targets(job, request.account_ids)

    return await publisher.publish(
        job_id,
        targets=targets,
        publish_mode=request.publish_mode,
        force=request.force,
        caption=request.caption,
        scheduled_for=request.scheduled_for,
        timezone=request.timezone,
        created_by=request.created_by,
    )


@router.post("/master-batch/{batch_id}/post")
async def publish_master_batch(
    request: PublishMasterBatchRequest,
    batch_id: str = Path(...),
    publisher: Publisher = Depends(get_job_publisher),
    enqueue: Enqueue = Depends(get_enqueue)
):
    """
    Publish the completed children of a master batch.

    Returns:
        {"posted", "skipped", "failed", "results": [...]}, or
        {"batch_id", "queued": true} with 202 when background is set
    """
    if request.background:
        await enqueue("publish_master_batch", {
            "batch_id": batch_id,
            "job_ids": request.job_ids,
            "force": request.force,
        })
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"batch_id": batch_id, "queued": True})

    return await publisher.publish_master_batch(batch_id, job_ids=request.job_ids, force=request.force)
