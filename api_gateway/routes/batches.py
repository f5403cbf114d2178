"""
Batch endpoints.

Batch and master batch creation, details and deletion.
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, ConfigDict, Field

from modules.batch_coordinator import BatchCoordinator
from shared.logging import get_logger
from shared.models.batch import Batch
from shared.models.job import PipelineJob, PublishMode
from shared.models.steps import PipelineStep
from api_gateway.dependencies import get_batch_coordinator

logger = get_logger(__name__)

router = APIRouter()


class CreateBatchRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    pipeline: List[PipelineStep]
    source_url: Optional[str] = None
    video_url: Optional[str] = None


class CreateMasterBatchRequest(CreateBatchRequest):
    model_config = ConfigDict(protected_namespaces=())

    model_ids: List[str] = Field(..., min_length=1)
    caption: str = ""
    scheduled_for: Optional[str] = None
    timezone: Optional[str] = None
    publish_mode: PublishMode = "draft"
    # model id -> first-frame image used instead of the model's primary image
    image_overrides: Dict[str, str] = Field(default_factory=dict)


def _created(batch: Batch, jobs: List[PipelineJob]) -> dict:
    return {
        "batch_id": batch.id,
        "status": batch.status,
        "total_jobs": batch.total_jobs,
        "is_master": batch.is_master,
        "job_ids": [job.id for job in jobs],
    }


@router.post("/batch-jobs", status_code=status.HTTP_202_ACCEPTED)
async def create_batch(
    request: CreateBatchRequest,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Fan a pipeline out into one child job per image of its batch-video-generation step."""
    batch, jobs = await coordinator.create_batch(
        request.name, request.pipeline, request.source_url, request.video_url
    )
    return _created(batch, jobs)


@router.post("/master-batch", status_code=status.HTTP_202_ACCEPTED)
async def create_master_batch(
    request: CreateMasterBatchRequest,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Fan a pipeline out into one child job per model, capturing each model's accounts."""
    batch, jobs = await coordinator.create_master_batch(
        request.name,
        request.pipeline,
        request.model_ids,
        source_url=request.source_url,
        video_url=request.video_url,
        caption=request.caption,
        scheduled_for=request.scheduled_for,
        timezone=request.timezone,
        publish_mode=request.publish_mode,
        image_overrides=request.image_overrides,
    )
    return _created(batch, jobs)


@router.get("/batches/{batch_id}")
async def get_batch(
    batch_id: str = Path(...),
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Batch with its child jobs and progress percentage."""
    return await coordinator.get_batch_details(batch_id)


@router.delete("/batches/{batch_id}")
async def delete_batch(
    batch_id: str = Path(...),
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Delete a batch. Its jobs are kept and detached."""
    await coordinator.delete_batch(batch_id)
    return {"batch_id": batch_id, "deleted": True}
