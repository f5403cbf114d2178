"""
Publisher.

Publishes a completed job's output to its distribution accounts.

Two guards keep a job from being posted twice:

- a lock row per job, held for the duration of one publish attempt
  (stale locks expire after post_lock_stale_minutes);
- an idempotency key per job recording ``processing -> completed`` and the
  response, so a retried request returns the first result.

Post rows are upserted on (job, account, platform), so even a guard failure
cannot produce a second row for the same target.
"""

from datetime import timedelta
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Sequence, Set

from modules.publisher.client import DistributionClient
from modules.publisher.payloads import build_post_body, platform_result, request_hash, target_status
from shared.config import settings
from shared.errors import NotFoundError, PipelineError, ValidationError
from shared.job_store import JobStore, job_store
from shared.logging import get_logger, set_job_id
from shared.models.job import PipelineJob
from shared.models.post import DELIVERED_POST_STATUSES, Post, PublishTarget, derive_post_status
from shared.storage import StorageClient, storage

logger = get_logger("publisher")

POSTED = "posted"
SKIPPED = "skipped"
FAILED = "failed"


def lock_key(job_id: str) -> str:
    return f"publish-lock:{job_id}"


def idempotency_key(job_id: str) -> str:
    return f"publish:{job_id}"


def _result(job: PipelineJob, status: str, reason: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {"job_id": job.id, "model_id": job.model_id, "status": status}
    if reason:
        result["reason" if status == SKIPPED else "error"] = reason
    result.update(extra)
    return result


class Publisher:
    """Publishes completed pipeline jobs."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        client: Optional[DistributionClient] = None,
        storage_client: Optional[StorageClient] = None
    ):
        self.store = store or job_store
        self.client = client or DistributionClient()
        self.storage = storage_client or storage

    async def resolve_targets(self, job: PipelineJob, account_ids: Optional[Sequence[str]] = None) -> List[PublishTarget]:
        """Distribution accounts linked to the job's model."""
        if not job.model_id:
            return []
        pairs = await self.store.get_model_account_targets(job.model_id, account_ids or None)
        return [PublishTarget(account_id=account_id, platform=platform) for account_id, platform in pairs]

    async def publish(
        self,
        job_id: str,
        targets: Optional[Sequence[PublishTarget]] = None,
        publish_mode: Optional[str] = None,
        force: bool = False,
        caption: Optional[str] = None,
        scheduled_for: Optional[str] = None,
        timezone: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Publish one completed job.

        Args:
            job_id: Pipeline job to publish
            targets: Accounts to post to (defaults to the model's linked accounts)
            publish_mode: now, schedule, queue or draft (defaults to the job's
                override, then "now")
            force: Re-publish a job already marked posted; targets that
                already have a delivered post are left out
            caption, scheduled_for, timezone: Default to the job's overrides

        Returns:
            {"job_id", "model_id", "status": posted|skipped|failed, "targets": [...], ...}

        Raises:
            NotFoundError: Unknown job
            ValidationError: Job not completed, no output, or schedule without time
        """
        set_job_id(job_id)
        job = await self.store.get_pipeline_job(job_id)
        if job is None:
            raise NotFoundError(f"Pipeline job {job_id} not found", job_id=job_id)
        if job.status != "completed" or not job.output_url:
            raise ValidationError("Job has no output or is not completed", job_id=job_id)

        overrides = job.overrides
        caption = caption if caption is not None else (overrides.caption if overrides and overrides.caption else "")
        publish_mode = publish_mode or (overrides.publish_mode if overrides and overrides.publish_mode else "now")
        scheduled_for = scheduled_for or (overrides.scheduled_for if overrides else None)
        timezone = timezone or (overrides.timezone if overrides else None)
        if publish_mode == "schedule" and not scheduled_for:
            raise ValidationError("scheduled_for is required for schedule mode", job_id=job_id)

        if targets is None:
            targets = await self.resolve_targets(job)
        targets = list(targets)

        if job.publish_status == POSTED and not force:
            logger.info("Job already posted, skipping", extra={"job_id": job.id})
            return _result(job, SKIPPED, "Already posted", targets=[
                {"account_id": t.account_id, "platform": t.platform, "status": SKIPPED} for t in targets
            ])
        if not targets:
            return _result(job, SKIPPED, "No distribution accounts linked to this job", targets=[])

        lock_stale = timedelta(minutes=settings.post_lock_stale_minutes)
        if not await self.store.acquire_post_lock(lock_key(job.id), lock_stale):
            logger.info("Publish lock held, skipping", extra={"job_id": job.id})
            return _result(job, SKIPPED, "Already being posted", targets=[])

        try:
            return await self._publish_locked(
                job, targets, publish_mode, force, caption, scheduled_for, timezone, created_by
            )
        finally:
            await self.store.release_post_lock(lock_key(job.id))

    async def _publish_locked(
        self,
        job: PipelineJob,
        targets: List[PublishTarget],
        publish_mode: str,
        force: bool,
        caption: str,
        scheduled_for: Optional[str],
        timezone: Optional[str],
        created_by: Optional[str]
    ) -> Dict[str, Any]:
        existing = await self.store.list_posts_for_job(job.id)
        delivered = {(p.account_id, p.platform) for p in existing if p.status in DELIVERED_POST_STATUSES}
        if delivered and not force:
            await self.store.update_pipeline_job(job.id, {"publish_status": POSTED})
            return _result(
                job, SKIPPED, "Already posted",
                post_status=derive_post_status(p.status for p in existing), targets=[]
            )
        targets = [t for t in targets if (t.account_id, t.platform) not in delivered]
        if not targets:
            return _result(job, SKIPPED, "All platforms already succeeded", targets=[])

        key = idempotency_key(job.id)
        fingerprint = request_hash(job.id, job.output_url, caption, publish_mode, scheduled_for, timezone, targets)
        claim = await self.store.begin_idempotent(
            key, fingerprint, timedelta(minutes=settings.idempotency_stale_minutes)
        )
        if claim.state == "processing":
            return _result(job, SKIPPED, "Already being posted", targets=[])
        if claim.state == "completed" and not force:
            stored = dict(claim.response or {})
            stored.update(status=SKIPPED, reason="Already posted")
            return stored
        if claim.state == "mismatch" and not force:
            return _result(job, SKIPPED, "Already posted with different settings", targets=[])
        if claim.state != "acquired":
            # force over a finished or mismatched key: take it over
            await self.store.abandon_idempotent(key)
            claim = await self.store.begin_idempotent(
                key, fingerprint, timedelta(minutes=settings.idempotency_stale_minutes)
            )
            if claim.state != "acquired":
                return _result(job, SKIPPED, "Already being posted", targets=[])

        external_post_id: Optional[str] = None
        try:
            media_url = await self._upload_media(job)
            body = build_post_body(targets, caption, media_url, publish_mode, scheduled_for, timezone)
            post = await self.client.create_post(body)
            external_post_id = post.get("_id") or post.get("id")

            target_results = []
            for target in targets:
                platform = platform_result(post, target)
                status = target_status(publish_mode, platform.get("status") or post.get("status"), post.get("status"))
                await self.store.upsert_post(Post(
                    job_id=job.id,
                    account_id=target.account_id,
                    platform=target.platform,
                    caption=caption,
                    media_url=job.output_url,
                    status=status,
                    external_post_id=platform.get("platformPostId") or external_post_id,
                    external_url=platform.get("platformPostUrl"),
                    publish_mode=publish_mode,
                    scheduled_for=scheduled_for,
                    created_by=created_by,
                    error=platform.get("error"),
                ))
                target_results.append({"account_id": target.account_id, "platform": target.platform, "status": status})

            succeeded = any(r["status"] != FAILED for r in target_results)
            response = _result(
                job,
                POSTED if succeeded else FAILED,
                None if succeeded else "Every platform rejected the post",
                post_id=external_post_id,
                post_status=derive_post_status(r["status"] for r in target_results),
                targets=target_results,
            )
            if succeeded:
                await self.store.update_pipeline_job(job.id, {"publish_status": POSTED})
                await self.store.complete_idempotent(key, response)
            else:
                # Nothing went out; a later attempt may post again
                await self.store.abandon_idempotent(key)
            logger.info(
                "Job published",
                extra={"job_id": job.id, "post_id": external_post_id, "status": response["status"]}
            )
            return response
        except PipelineError as e:
            logger.error("Publish failed", exc_info=e, extra={"job_id": job.id})
            if external_post_id:
                # The post exists remotely; never create it a second time
                await self.store.complete_idempotent(key, _result(job, POSTED, post_id=external_post_id, targets=[]))
            else:
                await self.store.abandon_idempotent(key)
            return _result(job, FAILED, e.message, targets=[])

    async def _upload_media(self, job: PipelineJob) -> str:
        filename = PurePosixPath(job.output_url.split("?")[0]).name or f"{job.id}.mp4"
        presign = await self.client.presign_upload(filename, "video/mp4")
        data = await self.storage.download_to_bytes(job.output_url)
        await self.client.upload(presign["uploadUrl"], data, "video/mp4")
        return presign["publicUrl"]

    async def publish_master_batch(
        self,
        batch_id: str,
        job_ids: Optional[Sequence[str]] = None,
        force: bool = False
    ) -> Dict[str, Any]:
        """
        Publish the children of a master batch using its captured configuration.

        Once a model has a posted job in the batch, its other jobs are skipped
        unless force is set.

        Returns:
            {"posted", "skipped", "failed", "results": [...]}
        """
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        if not batch.is_master or batch.master_config is None:
            raise ValidationError("Batch is not a master batch")
        master = batch.master_config

        children = await self.store.list_pipeline_jobs_by_batch(batch_id)
        if job_ids:
            wanted = set(job_ids)
            selected = [job for job in children if job.id in wanted]
        else:
            selected = [job for job in children if job.status == "completed"]
        selected_ids = {job.id for job in selected}
        posted_models: Set[str] = {
            job.model_id for job in children
            if job.publish_status == POSTED and job.model_id and job.id not in selected_ids
        }

        results: List[Dict[str, Any]] = []
        for job in selected:
            if job.status != "completed" or not job.output_url:
                results.append(_result(job, SKIPPED, "Job has no output or is not completed"))
                continue
            if job.publish_status == POSTED and not force:
                results.append(_result(job, SKIPPED, "Already posted"))
                continue
            if not force and job.model_id and job.model_id in posted_models:
                await self.store.update_pipeline_job(job.id, {"publish_status": POSTED})
                results.append(_result(job, SKIPPED, "Model already posted in this batch"))
                continue

            model_config = master.config_for_model(job.model_id)
            targets = await self.resolve_targets(job, model_config.account_ids if model_config else None)
            overrides = job.overrides
            try:
                result = await self.publish(
                    job.id,
                    targets=targets,
                    publish_mode=(overrides.publish_mode if overrides else None) or master.publish_mode,
                    force=force,
                    caption=(overrides.caption if overrides and overrides.caption is not None else master.caption),
                    scheduled_for=(overrides.scheduled_for if overrides else None) or master.scheduled_for,
                    timezone=(overrides.timezone if overrides else None) or master.timezone,
                )
            except PipelineError as e:
                result = _result(job, FAILED, e.message)
            if not targets and result["status"] == SKIPPED:
                # Approval is recorded even without linked accounts
                await self.store.update_pipeline_job(job.id, {"publish_status": POSTED})
            results.append(result)
            if result["status"] == POSTED and job.model_id:
                posted_models.add(job.model_id)

        summary = {
            "posted": sum(1 for r in results if r["status"] == POSTED),
            "skipped": sum(1 for r in results if r["status"] == SKIPPED),
            "failed": sum(1 for r in results if r["status"] == FAILED),
            "results": results,
        }
        logger.info(
            "Master batch published",
            extra={"batch_id": batch_id, "posted": summary["posted"],
                   "skipped": summary["skipped"], "failed": summary["failed"]}
        )
        return summary


_publisher: Optional[Publisher] = None


def get_publisher() -> Publisher:
    global _publisher
    if _publisher is None:
        _publisher = Publisher()
    return _publisher
