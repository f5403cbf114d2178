"""
Completion router.

Every provider completion reaches the pipeline through ``resume``, whether
it was pushed by the provider's webhook or found by the recovery sweep.

``resume`` first claims the (job, request) pair in the store. The claim is a
conditional update that clears the stored request handle, so exactly one
caller applies the outcome; the webhook retrying, the sweep racing the
webhook, or a second worker picking up the same task all lose the claim and
exit without side effects.

The claimed id stays in ``resumed_request_id`` until the step's output is
recorded, so the sweep can finish a resume whose worker died in between.
"""

from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from modules.generation_provider import GenerationProviderClient, ProviderEvent, get_provider
from modules.pipeline_runner import PipelineRunner, get_runner
from shared.config import settings
from shared.errors import GenerationError, PipelineError
from shared.job_store import PIPELINE, AnyJob, JobStore, job_store, utcnow
from shared.logging import get_logger, set_job_id
from shared.models.job import TERMINAL_STATUSES
from shared.redis_client import RedisClient, redis_client

logger = get_logger("completion_router")

Enqueue = Callable[[str, Dict[str, Any]], Awaitable[Any]]

NO_REQUEST_ID_REASON = "Job timed out and no request ID was stored for recovery"
NO_ARTIFACT_REASON = "Provider completed without returning a video"
RECOVERY_LOCK_KEY = "recovery:last_run"

# resume() results
RESUMED = "resumed"
FAILED = "failed"
DUPLICATE = "duplicate"
ALREADY_TERMINAL = "already_terminal"
NOT_FOUND = "not_found"
PENDING = "pending"


async def _default_enqueue(task_type: str, payload: Dict[str, Any]) -> Any:
    from api_gateway.services.queue_service import enqueue_task
    return await enqueue_task(task_type, payload)


def provider_status_reason(status: str) -> str:
    return f"Provider job status: {status}"


class CompletionRouter:
    """Routes provider completions to the pipeline runner exactly once."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        runner: Optional[PipelineRunner] = None,
        provider: Optional[GenerationProviderClient] = None,
        cache: Optional[RedisClient] = None,
        enqueue: Optional[Enqueue] = None
    ):
        self.store = store or job_store
        self._runner = runner
        self._provider = provider
        self.cache = cache or redis_client
        self.enqueue = enqueue or _default_enqueue

    @property
    def runner(self) -> PipelineRunner:
        if self._runner is None:
            self._runner = get_runner()
        return self._runner

    @property
    def provider(self) -> GenerationProviderClient:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(self, kind: str, job_id: str, request_id: str, outcome: ProviderEvent) -> str:
        """
        Apply a provider outcome to the job waiting on request_id.

        Args:
            kind: PIPELINE or LEGACY
            job_id: Owning job
            request_id: Provider request handle the outcome belongs to
            outcome: Completed (with artifact) or failed (with reason)

        Returns:
            One of resumed, failed, duplicate, already_terminal, not_found, pending
        """
        set_job_id(job_id)
        job = await self.store.get_any(kind, job_id)
        if job is None:
            logger.warning("Resume target not found", extra={"job_id": job_id, "request_id": request_id})
            return NOT_FOUND
        if job.status in TERMINAL_STATUSES:
            logger.info(
                "Resume ignored, job already terminal",
                extra={"job_id": job_id, "request_id": request_id, "status": job.status}
            )
            return ALREADY_TERMINAL
        if outcome.status not in ("completed", "failed"):
            return PENDING

        if not await self.store.claim_request(kind, job_id, request_id):
            logger.info(
                "Resume ignored, request already claimed",
                extra={"job_id": job_id, "request_id": request_id}
            )
            return DUPLICATE
        return await self._apply(kind, job, request_id, outcome)

    async def _apply(self, kind: str, job: AnyJob, request_id: str, outcome: ProviderEvent) -> str:
        """Apply a final outcome; the caller holds the claim on request_id."""
        logger.info(
            "Resuming job after provider completion",
            extra={"job_id": job.id, "request_id": request_id, "provider_status": outcome.status}
        )

        if outcome.succeeded:
            if kind == PIPELINE:
                await self.runner.resume_after_provider(job.id, outcome.artifact_url)
            else:
                await self.runner.complete_job(job.id, outcome.artifact_url)
            return RESUMED

        if outcome.status == "completed":
            reason = NO_ARTIFACT_REASON
        else:
            reason = outcome.error or provider_status_reason(outcome.status)
        await self._fail(kind, job, reason)
        return FAILED

    async def _fail(self, kind: str, job: AnyJob, reason: str) -> bool:
        if kind == PIPELINE:
            return await self.runner.mark_failed(job, reason)
        return await self.runner.mark_job_failed(job, reason)

    # ------------------------------------------------------------------
    # Webhook path
    # ------------------------------------------------------------------

    async def handle_webhook(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Acknowledge a provider webhook and queue the real work.

        Always answers {"received": true}; a payload that cannot be parsed or
        is not a completion is logged and dropped.
        """
        try:
            event = GenerationProviderClient.parse_webhook(body)
        except GenerationError as e:
            logger.warning("Ignoring malformed webhook", extra={"error": str(e)})
            return {"received": True}

        if event.status not in ("completed", "failed"):
            logger.info(
                "Ignoring non-terminal webhook",
                extra={"request_id": event.request_id, "provider_status": event.status}
            )
            return {"received": True}

        await self.enqueue("resume_completion", {"event": event.model_dump()})
        logger.info(
            "Webhook accepted",
            extra={"request_id": event.request_id, "provider_status": event.status}
        )
        return {"received": True}

    async def process_event(self, event: ProviderEvent) -> str:
        """Find the job waiting on event.request_id and resume it (worker side of the webhook)."""
        found = await self.store.find_job_by_request_id(event.request_id)
        if found is None:
            logger.warning("No job waiting on provider request", extra={"request_id": event.request_id})
            return NOT_FOUND
        kind, job = found
        return await self.resume(kind, job.id, event.request_id, event)

    # ------------------------------------------------------------------
    # Recovery path
    # ------------------------------------------------------------------

    async def recover_stuck_jobs(self, force: bool = False) -> Dict[str, Any]:
        """
        Poll the provider for jobs stuck in processing.

        Sweeps closer together than recovery_min_interval_seconds are skipped
        unless force is set.

        Returns:
            {"skipped": bool, "checked": int, "results": [{job_id, kind, action, detail}]}
        """
        if not force:
            acquired = await self.cache.set_if_absent(
                RECOVERY_LOCK_KEY, utcnow().isoformat(), settings.recovery_min_interval_seconds
            )
            if not acquired:
                logger.info("Recovery sweep skipped, ran recently")
                return {"skipped": True, "checked": 0, "results": []}

        threshold = timedelta(minutes=settings.stuck_job_threshold_minutes)
        stuck = await self.store.find_stuck_jobs(threshold)
        logger.info("Recovery sweep started", extra={"stuck_jobs": len(stuck)})

        results: List[Dict[str, Any]] = []
        for kind, job in stuck:
            try:
                results.append(await self._recover_one(kind, job))
            except Exception as e:
                logger.error("Recovery failed for job", exc_info=e, extra={"job_id": job.id})
                results.append(self._entry(job, kind, "error", str(e)))

        logger.info("Recovery sweep finished", extra={"stuck_jobs": len(stuck)})
        return {"skipped": False, "checked": len(stuck), "results": results}

    @staticmethod
    def _entry(job: AnyJob, kind: str, action: str, detail: str) -> Dict[str, Any]:
        return {"job_id": job.id, "kind": kind, "action": action, "detail": detail}

    async def _recover_one(self, kind: str, job: AnyJob) -> Dict[str, Any]:
        set_job_id(job.id)
        request_id = job.provider_request_id
        if not request_id:
            if job.resumed_request_id:
                return await self._recover_claimed(kind, job)
            if await self._fail(kind, job, NO_REQUEST_ID_REASON):
                return self._entry(job, kind, "no_request_id", NO_REQUEST_ID_REASON)
            return self._entry(job, kind, "skipped", "Job changed state during recovery")

        try:
            event = await self.provider.poll_event(request_id)
        except PipelineError as e:
            logger.warning(
                "Provider poll failed during recovery",
                extra={"job_id": job.id, "request_id": request_id, "error": str(e)}
            )
            return self._entry(job, kind, "error", f"Provider poll failed: {e}")

        attempts = job.recovery_attempts + 1

        if event.status in ("queued", "running"):
            if attempts >= settings.max_recovery_attempts:
                reason = f"Provider did not complete after {attempts} recovery attempts"
                # Take the claim so a late webhook cannot resume a job failed here
                if await self.store.claim_request(kind, job.id, request_id) and await self._fail(kind, job, reason):
                    return self._entry(job, kind, "failed", reason)
                return self._entry(job, kind, "skipped", "Job changed state during recovery")
            await self.store.transition(kind, job.id, ["processing"], {
                "recovery_attempts": attempts,
                "step": f"Still generating (provider {event.status}), recovery check {attempts}",
            })
            return self._entry(job, kind, "still_running", f"Provider status: {event.status}")

        await self.store.transition(kind, job.id, ["processing"], {"recovery_attempts": attempts})
        result = await self.resume(kind, job.id, request_id, event)
        if result == RESUMED:
            return self._entry(job, kind, "recovered", "Provider had completed; job resumed")
        if result == FAILED:
            return self._entry(job, kind, "failed", event.error or provider_status_reason(event.status))
        return self._entry(job, kind, "skipped", f"Resume result: {result}")

    async def _recover_claimed(self, kind: str, job: AnyJob) -> Dict[str, Any]:
        """
        Finish a resume whose worker died after claiming the request.

        The claimed step's output was never recorded (recording clears
        resumed_request_id), so the provider outcome is fetched again and
        applied once more under a fresh claim.
        """
        request_id = job.resumed_request_id
        try:
            event = await self.provider.poll_event(request_id)
        except PipelineError as e:
            logger.warning(
                "Provider poll failed during recovery",
                extra={"job_id": job.id, "request_id": request_id, "error": str(e)}
            )
            return self._entry(job, kind, "error", f"Provider poll failed: {e}")

        if not await self.store.reclaim_resumed_request(kind, job.id, request_id, job.updated_at):
            return self._entry(job, kind, "skipped", "Job changed state during recovery")

        logger.info(
            "Re-applying interrupted resume",
            extra={"job_id": job.id, "request_id": request_id, "provider_status": event.status}
        )
        if event.status not in ("completed", "failed"):
            # Only the give-up path claims a request that is still running
            reason = f"Provider did not complete after {job.recovery_attempts + 1} recovery attempts"
            await self._fail(kind, job, reason)
            return self._entry(job, kind, "failed", reason)

        if await self._apply(kind, job, request_id, event) == RESUMED:
            return self._entry(job, kind, "recovered", "Interrupted resume applied again")
        return self._entry(job, kind, "failed", event.error or provider_status_reason(event.status))


_router: Optional[CompletionRouter] = None


def get_router() -> CompletionRouter:
    global _router
    if _router is None:
        _router = CompletionRouter()
    return _router
