"""
Batch coordinator.

Fans one pipeline template out into N child pipeline jobs and fans their
terminal statuses back into the batch counters.

Counters only move through the store's atomic increment; the aggregate
status is derived from the returned counters and written with a
compare-and-set on those same counters, so concurrent children can never
leave a status that disagrees with the numbers.
"""

import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from shared.config import settings
from shared.errors import NotFoundError, PipelineError, RetryableError, ValidationError
from shared.job_store import JobStore, job_store, utcnow
from shared.logging import get_logger
from shared.models.batch import Batch, MasterConfig, MasterModelConfig, derive_batch_status
from shared.models.job import PipelineJob, PublishMode, PublishOverrides
from shared.models.steps import (
    BatchImageEntry,
    BatchVideoGenerationStep,
    PipelineStep,
    VideoGenerationStep,
)
from shared.redis_client import RedisClient, redis_client
from shared.storage import StorageClient, storage
from shared.validation import fan_out_step, validate_pipeline_request

logger = get_logger("batch_coordinator")

Enqueue = Callable[[str, Dict[str, Any]], Awaitable[Any]]

FINAL_BATCH_STATUSES = ("completed", "failed", "partial")


async def _default_enqueue(task_type: str, payload: Dict[str, Any]) -> Any:
    from api_gateway.services.queue_service import enqueue_task
    return await enqueue_task(task_type, payload)


def batch_cache_key(batch_id: str) -> str:
    return f"batch_details:{batch_id}"


def _new_id() -> str:
    return str(uuid.uuid4())


def _clone_steps(pipeline: Sequence[PipelineStep]) -> List[PipelineStep]:
    return [step.model_copy(deep=True) for step in pipeline]


def expand_for_image(pipeline: Sequence[PipelineStep], image_url: str) -> List[PipelineStep]:
    """
    Child pipeline for one reference image.

    The fan-out step becomes a single video-generation step with the same id;
    existing video-generation steps use the image too.
    """
    steps: List[PipelineStep] = []
    for step in _clone_steps(pipeline):
        if isinstance(step, BatchVideoGenerationStep):
            steps.append(VideoGenerationStep(
                id=step.id,
                enabled=step.enabled,
                config=step.config.to_single(image_url),
            ))
        elif isinstance(step, VideoGenerationStep):
            step.config.image_url = image_url
            steps.append(step)
        else:
            steps.append(step)
    return steps


def _child_name(batch_name: str, index: int, image: BatchImageEntry) -> str:
    filename = image.filename or image.image_url.rsplit("/", 1)[-1].split("?")[0]
    return f"{batch_name} #{index + 1} ({filename})"


class BatchCoordinator:
    """Creates batches, schedules their children and aggregates progress."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        cache: Optional[RedisClient] = None,
        storage_client: Optional[StorageClient] = None,
        enqueue: Optional[Enqueue] = None
    ):
        self.store = store or job_store
        self.cache = cache or redis_client
        self.storage = storage_client or storage
        self.enqueue = enqueue or _default_enqueue

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        name: str,
        pipeline: List[PipelineStep],
        source_url: Optional[str] = None,
        video_url: Optional[str] = None
    ) -> Tuple[Batch, List[PipelineJob]]:
        """
        Create a batch with one child per image of the fan-out step.

        Raises:
            ValidationError: No fan-out step, no images, or missing input video
        """
        validate_pipeline_request(pipeline, source_url, video_url, allow_fan_out=True)
        fan_out = fan_out_step(pipeline)
        if fan_out is None or not fan_out.config.images:
            raise ValidationError("A batch needs a batch-video-generation step with at least one image")

        children = [
            (_child_name(name, i, image), expand_for_image(pipeline, image.image_url), None)
            for i, image in enumerate(fan_out.config.images)
        ]
        return await self._create(name, pipeline, children, source_url, video_url)

    async def create_master_batch(
        self,
        name: str,
        pipeline: List[PipelineStep],
        model_ids: Sequence[str],
        source_url: Optional[str] = None,
        video_url: Optional[str] = None,
        caption: str = "",
        scheduled_for: Optional[str] = None,
        timezone: Optional[str] = None,
        publish_mode: PublishMode = "draft",
        image_overrides: Optional[Dict[str, str]] = None
    ) -> Tuple[Batch, List[PipelineJob]]:
        """
        Create a batch with one child per model.

        Each model's reference image and linked distribution accounts are
        captured into the batch's master configuration now, so later changes
        to a model do not alter the batch.

        Args:
            image_overrides: model id -> reference image used instead of the
                model's primary image
        """
        if not model_ids:
            raise ValidationError("A master batch needs at least one model")
        validate_pipeline_request(pipeline, source_url, video_url, allow_fan_out=True)
        image_overrides = image_overrides or {}

        models = {row["id"]: row for row in await self.store.get_models(model_ids)}
        missing = [model_id for model_id in model_ids if model_id not in models]
        if missing:
            raise ValidationError(f"Unknown models: {', '.join(missing)}")

        mappings = await self.store.get_model_account_mappings(model_ids)
        master_models: List[MasterModelConfig] = []
        children = []
        for model_id in model_ids:
            image_url = image_overrides.get(model_id) or await self.store.get_primary_image_url(model_id)
            if not image_url:
                raise ValidationError(f"Model {models[model_id]['name']} has no reference image")
            model_name = models[model_id]["name"]
            master_models.append(MasterModelConfig(
                model_id=model_id,
                model_name=model_name,
                primary_image_url=image_url,
                account_ids=[row["account_id"] for row in mappings if row["model_id"] == model_id],
            ))
            children.append((f"{name} - {model_name}", expand_for_image(pipeline, image_url), model_id))

        master_config = MasterConfig(
            caption=caption,
            scheduled_for=scheduled_for,
            timezone=timezone or settings.default_timezone,
            publish_mode=publish_mode,
            models=master_models,
        )
        return await self._create(name, pipeline, children, source_url, video_url, master_config)

    async def _create(
        self,
        name: str,
        template: List[PipelineStep],
        children: List[Tuple[str, List[PipelineStep], Optional[str]]],
        source_url: Optional[str],
        video_url: Optional[str],
        master_config: Optional[MasterConfig] = None
    ) -> Tuple[Batch, List[PipelineJob]]:
        batch = await self.store.create_batch(Batch(
            id=_new_id(),
            name=name,
            status="pending",
            total_jobs=len(children),
            pipeline=template,
            is_master=master_config is not None,
            master_config=master_config,
        ))

        jobs: List[PipelineJob] = []
        for child_name, steps, model_id in children:
            jobs.append(await self.store.create_pipeline_job(PipelineJob(
                id=_new_id(),
                name=child_name,
                status="queued",
                pipeline=steps,
                total_steps=len([step for step in steps if step.enabled]),
                source_url=source_url,
                video_url=video_url,
                batch_id=batch.id,
                model_id=model_id,
            )))

        await self.enqueue("process_batch", {"batch_id": batch.id})
        logger.info(
            "Batch created",
            extra={"batch_id": batch.id, "total_jobs": len(jobs), "is_master": batch.is_master}
        )
        return batch, jobs

    async def process_batch(self, batch_id: str) -> int:
        """
        Resolve the shared source once, then schedule every queued child.

        If the source cannot be fetched for a non-retryable reason every
        queued child is failed with that reason, so the batch still reaches a
        final status. Retryable failures propagate for the worker to requeue.

        Returns:
            Number of children scheduled
        """
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        children = [job for job in await self.store.list_pipeline_jobs_by_batch(batch_id) if job.status == "queued"]

        source_url = next((job.source_url for job in children if job.source_url and not job.video_url), None)
        if source_url:
            try:
                video_url = await self._resolve_shared_source(batch_id, source_url)
            except RetryableError:
                raise
            except PipelineError as e:
                logger.error("Shared batch source failed", exc_info=e, extra={"batch_id": batch_id})
                await self.fail_queued_children(batch_id, f"Source video could not be prepared: {e.message}")
                return 0
            for job in children:
                if not job.video_url:
                    await self.store.update_pipeline_job(job.id, {"video_url": video_url})
            logger.info("Shared batch source resolved", extra={"batch_id": batch_id, "video_url": video_url})

        if batch.status == "pending":
            await self.store.update_batch(batch_id, {"status": "processing"})
        for job in children:
            await self.enqueue("run_pipeline_job", {"job_id": job.id})
        await self.invalidate(batch_id)
        logger.info("Batch children scheduled", extra={"batch_id": batch_id, "scheduled": len(children)})
        return len(children)

    async def _resolve_shared_source(self, batch_id: str, source_url: str) -> str:
        if self.storage.object_path_from_url(source_url):
            return source_url
        data = await self.storage.download_to_bytes(source_url)
        return await self.storage.upload(data, f"batches/{batch_id}/source.mp4", "video/mp4")

    async def fail_queued_children(self, batch_id: str, reason: str) -> int:
        """
        Fail every child that never started, counting each one into the batch.

        Returns:
            Number of children this call failed
        """
        failed = 0
        for job in await self.store.list_pipeline_jobs_by_batch(batch_id):
            if job.status != "queued":
                continue
            if await self.store.transition_pipeline_job(job.id, ["queued"], {"status": "failed", "error": reason}):
                failed += 1
                await self.on_child_terminal(batch_id, "failed")
        logger.info("Queued batch children failed", extra={"batch_id": batch_id, "failed": failed, "error": reason})
        return failed

    # ------------------------------------------------------------------
    # Fan-in
    # ------------------------------------------------------------------

    async def on_child_terminal(self, batch_id: str, child_status: str) -> Optional[str]:
        """
        Count one child that reached a terminal status.

        Callers invoke this only after winning the child's terminal
        transition, so each child is counted once.

        Returns:
            The derived batch status, or None if the increment was refused
        """
        counters = await self.store.increment_batch_counters(
            batch_id,
            completed=1 if child_status == "completed" else 0,
            failed=1 if child_status == "failed" else 0,
        )
        if counters is None:
            return None

        total = counters["total_jobs"]
        completed = counters["completed_jobs"]
        failed = counters["failed_jobs"]
        status = derive_batch_status(total, completed, failed)
        completed_at = utcnow().isoformat() if status in FINAL_BATCH_STATUSES else None
        await self.store.set_batch_status_if_counters(batch_id, completed, failed, status, completed_at)
        await self.invalidate(batch_id)

        logger.info(
            "Batch progress updated",
            extra={"batch_id": batch_id, "status": status, "completed_jobs": completed,
                   "failed_jobs": failed, "total_jobs": total}
        )
        return status

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def invalidate(self, batch_id: str) -> None:
        await self.cache.delete(batch_cache_key(batch_id))

    async def get_batch_details(self, batch_id: str) -> Dict[str, Any]:
        """Batch, its children and progress percentage (briefly cached)."""
        cached = await self.cache.get_json(batch_cache_key(batch_id))
        if cached is not None:
            return cached

        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        jobs = await self.store.list_pipeline_jobs_by_batch(batch_id)
        details = {
            "batch": batch.model_dump(mode="json"),
            "jobs": [job.model_dump(mode="json") for job in jobs],
            "progress": batch.progress,
        }
        await self.cache.set_json(batch_cache_key(batch_id), details, ttl=settings.batch_cache_ttl_seconds)
        return details

    async def delete_batch(self, batch_id: str) -> None:
        """Delete a batch; its jobs are kept and detached."""
        if await self.store.get_batch(batch_id) is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        await self.store.delete_batch(batch_id)
        await self.invalidate(batch_id)
        logger.info("Batch deleted", extra={"batch_id": batch_id})

    async def regenerate_job(self, job_id: str, image_url: Optional[str] = None) -> PipelineJob:
        """
        Create a new job from an existing one. The original is never modified.

        Args:
            job_id: Job to copy
            image_url: Optional reference image for video-generation steps
        """
        original = await self.store.get_pipeline_job(job_id)
        if original is None:
            raise NotFoundError(f"Pipeline job {job_id} not found", job_id=job_id)

        steps = _clone_steps(original.pipeline)
        if image_url:
            for step in steps:
                if isinstance(step, VideoGenerationStep):
                    step.config.image_url = image_url

        job = await self.store.create_pipeline_job(PipelineJob(
            id=_new_id(),
            name=original.name,
            status="queued",
            pipeline=steps,
            total_steps=len([step for step in steps if step.enabled]),
            source_url=original.source_url,
            video_url=original.video_url,
            batch_id=original.batch_id,
            model_id=original.model_id,
            regenerated_from=original.id,
            overrides=original.overrides,
        ))
        if original.batch_id:
            await self.store.increment_batch_total(original.batch_id)
            await self.invalidate(original.batch_id)
        await self.enqueue("run_pipeline_job", {"job_id": job.id})
        logger.info("Job regenerated", extra={"job_id": job.id, "regenerated_from": original.id})
        return job

    async def update_overrides(self, job_id: str, overrides: PublishOverrides) -> PipelineJob:
        """Merge per-job publishing overrides; unset fields keep their stored value."""
        job = await self.store.get_pipeline_job(job_id)
        if job is None:
            raise NotFoundError(f"Pipeline job {job_id} not found", job_id=job_id)
        merged = (job.overrides or PublishOverrides()).model_copy(
            update=overrides.model_dump(exclude_none=True)
        )
        await self.store.update_pipeline_job(job_id, {"overrides": merged.model_dump()})
        job.overrides = merged
        if job.batch_id:
            await self.invalidate(job.batch_id)
        return job


_coordinator: Optional[BatchCoordinator] = None


def get_coordinator() -> BatchCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = BatchCoordinator()
    return _coordinator


async def on_child_terminal(batch_id: str, child_status: str) -> Optional[str]:
    return await get_coordinator().on_child_terminal(batch_id, child_status)
