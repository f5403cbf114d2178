"""
Pipeline runner.

Drives a pipeline job through its enabled steps. Every step's result is
persisted before the next step starts, and every write is a guarded
transition that only applies while the job is still ``processing``: if
another invocation failed or finished the job in the meantime, the runner
stops instead of overwriting it.

A provider-delegated step ends the invocation. The completion router calls
back into ``resume_after_provider`` once the provider result is known.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from modules.step_executor import (
    PendingProvider,
    StepContext,
    StepExecutor,
    get_step_label,
    step_output_name,
)
from shared.errors import NotFoundError, PipelineError
from shared.job_store import JobStore, job_store, utcnow
from shared.logging import get_logger, set_job_id
from shared.models.job import Job, PipelineJob, StepResult
from shared.models.steps import BgMusicStep, PipelineStep, VideoGenerationConfig, VideoGenerationStep
from shared.storage import StorageClient, storage

logger = get_logger("pipeline_runner")

BatchNotifier = Callable[[str, str], Awaitable[Any]]

SUBMITTED_NOTE = "submitted, awaiting provider"
DONE_NOTE = "Done!"


async def _default_batch_notifier(batch_id: str, child_status: str) -> Any:
    from modules.batch_coordinator import on_child_terminal
    return await on_child_terminal(batch_id, child_status)


def _progress_note(index: int, total: int, label: str, suffix: Optional[str] = None) -> str:
    note = f"Step {index + 1}/{total}: {label}"
    return f"{note} - {suffix}" if suffix else note


def _error_message(error: Exception) -> str:
    if isinstance(error, PipelineError):
        return error.message
    return f"Unexpected error: {error}"


class PipelineRunner:
    """Runs and resumes pipeline jobs and legacy single-step jobs."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        executor: Optional[StepExecutor] = None,
        storage_client: Optional[StorageClient] = None,
        batch_notifier: Optional[BatchNotifier] = None
    ):
        self.store = store or job_store
        self.storage = storage_client or storage
        self.executor = executor or StepExecutor(storage_client=self.storage)
        self.batch_notifier = batch_notifier or _default_batch_notifier

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, pipeline_job_id: str) -> Optional[str]:
        """
        Start a queued pipeline job.

        A job that is not queued (already running, awaiting the provider, or
        terminal) is left untouched.

        Returns:
            The job status after this invocation, or None if the job is unknown
        """
        set_job_id(pipeline_job_id)
        job = await self.store.get_pipeline_job(pipeline_job_id)
        if job is None:
            logger.warning("Pipeline job not found", extra={"job_id": pipeline_job_id})
            return None
        if job.status != "queued":
            logger.info("Pipeline job not runnable", extra={"job_id": job.id, "status": job.status})
            return job.status

        steps = job.enabled_steps
        started = await self.store.transition_pipeline_job(
            job.id, ["queued"],
            {"status": "processing", "total_steps": len(steps), "step": "Starting"}
        )
        if not started:
            return await self._status(job.id)
        job.status = "processing"
        job.total_steps = len(steps)

        try:
            working_url = await self._resolve_source(job)
            await self._continue(job, 0, list(job.step_results), working_url)
        except Exception as e:
            logger.error("Pipeline job failed", exc_info=e, extra={"job_id": job.id})
            await self.mark_failed(job, _error_message(e))
        return await self._status(job.id)

    async def resume_after_provider(self, pipeline_job_id: str, artifact_url: str) -> Optional[str]:
        """
        Apply a successful provider result to the current step and run the rest.

        Callers must hold the provider-request claim for this job.
        """
        set_job_id(pipeline_job_id)
        job = await self.store.get_pipeline_job(pipeline_job_id)
        if job is None:
            raise NotFoundError(f"Pipeline job {pipeline_job_id} not found", job_id=pipeline_job_id)
        if job.status != "processing":
            logger.info("Resume skipped, job not processing", extra={"job_id": job.id, "status": job.status})
            return job.status

        steps = job.enabled_steps
        index = job.current_step
        try:
            if index >= len(steps):
                raise PipelineError(f"No step left to resume at index {index}", job_id=job.id)
            step = steps[index]
            results = list(job.step_results)
            context = StepContext.from_results(job.id, index, results, job.video_url)
            path = await self.executor.consume_provider_result(step, artifact_url, context)
            working_url = await self._record_step(job, step, index, len(steps), path, context, results)
            if working_url is not None:
                await self._continue(job, index + 1, results, working_url)
        except Exception as e:
            logger.error("Pipeline continuation failed", exc_info=e, extra={"job_id": job.id})
            await self.mark_failed(job, _error_message(e))
        return await self._status(job.id)

    async def mark_failed(self, job: PipelineJob, reason: str) -> bool:
        """
        Fail a non-terminal job, keeping its step results.

        Returns:
            True if this call made the transition (the batch is notified once)
        """
        failed = await self.store.transition_pipeline_job(
            job.id, ["queued", "processing"],
            {"status": "failed", "error": reason, "provider_request_id": None}
        )
        if failed:
            logger.info("Pipeline job failed", extra={"job_id": job.id, "error": reason})
            await self._notify_batch(job.batch_id, "failed", job.id)
        return failed

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _status(self, job_id: str) -> Optional[str]:
        job = await self.store.get_pipeline_job(job_id)
        return job.status if job else None

    async def _persist(self, job_id: str, fields: Dict[str, Any]) -> bool:
        applied = await self.store.transition_pipeline_job(job_id, ["processing"], fields)
        if not applied:
            logger.warning("Job left processing, stopping", extra={"job_id": job_id})
        return applied

    async def _resolve_source(self, job: PipelineJob) -> Optional[str]:
        """Bring a remote source video into storage once, before the first step."""
        if job.video_url:
            return job.video_url
        if not job.source_url:
            return None
        if self.storage.object_path_from_url(job.source_url):
            return job.source_url

        await self._persist(job.id, {"step": "Downloading source video"})
        data = await self.storage.download_to_bytes(job.source_url)
        video_url = await self.storage.upload(data, f"pipeline/{job.id}/source.mp4", "video/mp4")
        await self._persist(job.id, {"video_url": video_url})
        job.video_url = video_url
        return video_url

    async def _continue(
        self,
        job: PipelineJob,
        start: int,
        results: List[StepResult],
        working_url: Optional[str]
    ) -> None:
        steps = job.enabled_steps
        total = len(steps)

        for index in range(start, total):
            step = steps[index]
            label = get_step_label(step)

            if isinstance(step, BgMusicStep) and step.applies_inline:
                # Already mixed into its target steps
                if not await self._persist(job.id, {
                    "current_step": index + 1,
                    "step": _progress_note(index, total, label, "applied inline"),
                }):
                    return
                continue

            if not await self._persist(job.id, {"step": _progress_note(index, total, label)}):
                return

            context = StepContext.from_results(job.id, index, results, working_url)
            outcome = await self.executor.execute(step, context)

            if isinstance(outcome, PendingProvider):
                await self._persist(job.id, {
                    "provider_request_id": outcome.request_id,
                    "step": _progress_note(index, total, label, SUBMITTED_NOTE),
                })
                logger.info(
                    "Pipeline suspended on provider step",
                    extra={"job_id": job.id, "step_index": index, "request_id": outcome.request_id}
                )
                return

            working_url = await self._record_step(job, step, index, total, outcome.path, context, results)
            if working_url is None:
                return

        await self._complete(job, working_url, total)

    async def _record_step(
        self,
        job: PipelineJob,
        step: PipelineStep,
        index: int,
        total: int,
        path: str,
        context: StepContext,
        results: List[StepResult]
    ) -> Optional[str]:
        """Store a step's output and advance current_step. Returns the output URL."""
        path = await self._apply_inline_music(job, step, path, context)
        output_url = await self.storage.upload_file(path, step_output_name(job.id, index))
        label = get_step_label(step)
        results.append(StepResult(step_id=step.id, type=step.type, label=label, output_url=output_url))

        advanced = await self._persist(job.id, {
            "current_step": index + 1,
            "step_results": [result.model_dump() for result in results],
            "step": _progress_note(index, total, label, "done"),
            "resumed_request_id": None,
        })
        logger.info(
            "Step completed",
            extra={"job_id": job.id, "step_index": index, "step_type": step.type}
        )
        return output_url if advanced else None

    async def _apply_inline_music(
        self,
        job: PipelineJob,
        step: PipelineStep,
        path: str,
        context: StepContext
    ) -> str:
        for music in job.enabled_steps:
            if isinstance(music, BgMusicStep) and step.id in music.config.apply_to_steps:
                path = await self.executor.mix_music(
                    music, path, context, mode=music.config.mode_for_step(step.id)
                )
        return path

    async def _complete(self, job: PipelineJob, output_url: Optional[str], total: int) -> None:
        completed = await self.store.transition_pipeline_job(job.id, ["processing"], {
            "status": "completed",
            "current_step": total,
            "output_url": output_url,
            "step": DONE_NOTE,
            "error": None,
            "completed_at": utcnow().isoformat(),
        })
        if completed:
            logger.info("Pipeline job completed", extra={"job_id": job.id, "output_url": output_url})
            await self._notify_batch(job.batch_id, "completed", job.id)

    async def _notify_batch(self, batch_id: Optional[str], child_status: str, job_id: str) -> None:
        if not batch_id:
            return
        try:
            await self.batch_notifier(batch_id, child_status)
        except Exception as e:
            # Child transition already applied
            logger.error(
                "Failed to update batch progress",
                exc_info=e,
                extra={"job_id": job_id, "batch_id": batch_id}
            )

    # ------------------------------------------------------------------
    # Legacy single-step jobs
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> Optional[str]:
        """Submit a legacy motion-control job and store its request handle."""
        set_job_id(job_id)
        job = await self.store.get_job(job_id)
        if job is None:
            logger.warning("Job not found", extra={"job_id": job_id})
            return None
        if job.status != "queued":
            return job.status
        if not await self.store.transition_job(job.id, ["queued"], {"status": "processing", "step": "Submitting"}):
            return None

        try:
            step = VideoGenerationStep(
                id="generate",
                config=VideoGenerationConfig(mode="motion-control", image_url=job.image_url, prompt=job.prompt),
            )
            outcome = await self.executor.execute(step, StepContext(job_id=job.id, step_index=0, working_url=job.video_url))
            await self.store.transition_job(job.id, ["processing"], {
                "provider_request_id": outcome.request_id,
                "step": f"Generating video - {SUBMITTED_NOTE}",
            })
            return "processing"
        except Exception as e:
            logger.error("Job submission failed", exc_info=e, extra={"job_id": job.id})
            await self.mark_job_failed(job, _error_message(e))
            return "failed"

    async def complete_job(self, job_id: str, artifact_url: str) -> Optional[str]:
        """Store a legacy job's provider artifact and complete it. Callers hold the claim."""
        set_job_id(job_id)
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", job_id=job_id)
        if job.status != "processing":
            return job.status
        try:
            data = await self.storage.download_to_bytes(artifact_url)
            output_url = await self.storage.upload(data, f"jobs/{job.id}/output.mp4", "video/mp4")
        except Exception as e:
            logger.error("Failed to store job output", exc_info=e, extra={"job_id": job.id})
            await self.mark_job_failed(job, _error_message(e))
            return "failed"

        if await self.store.transition_job(job.id, ["processing"], {
            "status": "completed",
            "output_url": output_url,
            "step": DONE_NOTE,
            "completed_at": utcnow().isoformat(),
        }):
            await self._notify_batch(job.batch_id, "completed", job.id)
        return "completed"

    async def mark_job_failed(self, job: Job, reason: str) -> bool:
        failed = await self.store.transition_job(
            job.id, ["queued", "processing"],
            {"status": "failed", "error": reason, "provider_request_id": None}
        )
        if failed:
            await self._notify_batch(job.batch_id, "failed", job.id)
        return failed


_runner: Optional[PipelineRunner] = None


def get_runner() -> PipelineRunner:
    global _runner
    if _runner is None:
        _runner = PipelineRunner()
    return _runner


async def run(pipeline_job_id: str) -> Optional[str]:
    return await get_runner().run(pipeline_job_id)


async def run_job(job_id: str) -> Optional[str]:
    return await get_runner().run_job(job_id)
