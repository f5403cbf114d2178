"""
Job Store.

Durable records for jobs, pipeline jobs, batches, posts, publish locks and
idempotency keys. Every piece of state that crosses a worker invocation goes
through this module.

Status changes are conditional updates (``UPDATE ... WHERE status IN (...)``)
evaluated by Postgres, so two processes racing on the same job can never both
win a transition. Batch counters are incremented by the
``increment_batch_counters`` SQL function (see migrations/).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from shared.database import DatabaseClient, db
from shared.logging import get_logger
from shared.models.batch import Batch
from shared.models.job import Job, PipelineJob
from shared.models.post import Post

logger = get_logger("job_store")

PIPELINE_JOBS_TABLE = "pipeline_jobs"
JOBS_TABLE = "jobs"
BATCHES_TABLE = "pipeline_batches"
POSTS_TABLE = "posts"
LOCKS_TABLE = "post_request_locks"
IDEMPOTENCY_TABLE = "post_idempotency_keys"
MODELS_TABLE = "models"
MODEL_IMAGES_TABLE = "model_images"
MODEL_ACCOUNTS_TABLE = "model_account_mappings"

PIPELINE = "pipeline"
LEGACY = "legacy"

_TABLE_FOR_KIND = {PIPELINE: PIPELINE_JOBS_TABLE, LEGACY: JOBS_TABLE}

AnyJob = Union[PipelineJob, Job]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat()


@dataclass
class IdempotencyResult:
    """Outcome of claiming an idempotency key."""

    state: str  # acquired | processing | completed | mismatch
    response: Optional[Dict[str, Any]] = None


class JobStore:
    """Persistence operations used by the pipeline engine."""

    def __init__(self, db_client: Optional[DatabaseClient] = None):
        self.db = db_client or db

    # ------------------------------------------------------------------
    # Generic job helpers (pipeline and legacy share the same mechanics)
    # ------------------------------------------------------------------

    def _parse_job(self, kind: str, row: Dict[str, Any]) -> AnyJob:
        if kind == PIPELINE:
            return PipelineJob.model_validate(row)
        return Job.model_validate(row)

    async def _get(self, kind: str, job_id: str) -> Optional[AnyJob]:
        result = await self.db.table(_TABLE_FOR_KIND[kind]).select("*").eq("id", job_id).limit(1).execute()
        if not result.data:
            return None
        return self._parse_job(kind, result.data[0])

    async def _update(self, kind: str, job_id: str, fields: Dict[str, Any]) -> None:
        payload = dict(fields, updated_at=_iso(utcnow()))
        await self.db.table(_TABLE_FOR_KIND[kind]).update(payload).eq("id", job_id).execute()

    async def _transition(
        self,
        kind: str,
        job_id: str,
        expected_statuses: Sequence[str],
        fields: Dict[str, Any]
    ) -> bool:
        payload = dict(fields, updated_at=_iso(utcnow()))
        result = await (
            self.db.table(_TABLE_FOR_KIND[kind])
            .update(payload)
            .eq("id", job_id)
            .in_("status", list(expected_statuses))
            .execute()
        )
        changed = bool(result.data)
        if not changed:
            logger.info(
                "Guarded update did not apply",
                extra={"job_id": job_id, "kind": kind, "expected": ",".join(expected_statuses)}
            )
        return changed

    async def _claim(self, kind: str, job_id: str, request_id: str) -> bool:
        result = await (
            self.db.table(_TABLE_FOR_KIND[kind])
            .update({
                "provider_request_id": None,
                "resumed_request_id": request_id,
                "updated_at": _iso(utcnow()),
            })
            .eq("id", job_id)
            .eq("status", "processing")
            .eq("provider_request_id", request_id)
            .execute()
        )
        return bool(result.data)

    async def get_any(self, kind: str, job_id: str) -> Optional[AnyJob]:
        return await self._get(kind, job_id)

    async def transition(self, kind: str, job_id: str, expected_statuses: Sequence[str], fields: Dict[str, Any]) -> bool:
        return await self._transition(kind, job_id, expected_statuses, fields)

    async def claim_request(self, kind: str, job_id: str, request_id: str) -> bool:
        """
        Claim the right to apply a provider outcome.

        Clears the stored request handle only if the job is still processing
        and still waiting on exactly this request. Whichever caller clears it
        first wins; every later caller gets False.
        """
        return await self._claim(kind, job_id, request_id)

    async def reclaim_resumed_request(
        self,
        kind: str,
        job_id: str,
        request_id: str,
        seen_updated_at: Optional[datetime]
    ) -> bool:
        """
        Take over a claim whose holder stopped before recording the step.

        Applies only if the job has not been touched since the caller read it,
        so two sweeps looking at the same stuck row cannot both re-apply.
        """
        query = (
            self.db.table(_TABLE_FOR_KIND[kind])
            .update({"updated_at": _iso(utcnow())})
            .eq("id", job_id)
            .eq("status", "processing")
            .is_("provider_request_id", "null")
            .eq("resumed_request_id", request_id)
        )
        if seen_updated_at is not None:
            query = query.eq("updated_at", _iso(seen_updated_at))
        result = await query.execute()
        return bool(result.data)

    async def update_any(self, kind: str, job_id: str, fields: Dict[str, Any]) -> None:
        await self._update(kind, job_id, fields)

    # ------------------------------------------------------------------
    # Pipeline jobs
    # ------------------------------------------------------------------

    async def create_pipeline_job(self, job: PipelineJob) -> PipelineJob:
        now = _iso(utcnow())
        row = job.model_dump(mode="json", exclude={"created_at", "updated_at", "completed_at"})
        row.update(created_at=now, updated_at=now)
        result = await self.db.table(PIPELINE_JOBS_TABLE).insert(row).execute()
        return PipelineJob.model_validate(result.data[0] if result.data else row)

    async def get_pipeline_job(self, job_id: str) -> Optional[PipelineJob]:
        return await self._get(PIPELINE, job_id)

    async def list_pipeline_jobs_by_batch(self, batch_id: str) -> List[PipelineJob]:
        result = await (
            self.db.table(PIPELINE_JOBS_TABLE)
            .select("*")
            .eq("batch_id", batch_id)
            .order("created_at")
            .execute()
        )
        return [PipelineJob.model_validate(row) for row in result.data or []]

    async def update_pipeline_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        """Unconditional update for fields that do not change status."""
        await self._update(PIPELINE, job_id, fields)

    async def transition_pipeline_job(
        self,
        job_id: str,
        expected_statuses: Sequence[str],
        fields: Dict[str, Any]
    ) -> bool:
        """
        Update a pipeline job only if its current status is one of expected_statuses.

        Returns:
            True if the row was changed by this call
        """
        return await self._transition(PIPELINE, job_id, expected_statuses, fields)

    async def claim_provider_request(self, job_id: str, request_id: str) -> bool:
        return await self._claim(PIPELINE, job_id, request_id)

    # ------------------------------------------------------------------
    # Legacy single-step jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: Job) -> Job:
        now = _iso(utcnow())
        row = job.model_dump(mode="json", exclude={"created_at", "updated_at", "completed_at"})
        row.update(created_at=now, updated_at=now)
        result = await self.db.table(JOBS_TABLE).insert(row).execute()
        return Job.model_validate(result.data[0] if result.data else row)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self._get(LEGACY, job_id)

    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> None:
        await self._update(LEGACY, job_id, fields)

    async def transition_job(self, job_id: str, expected_statuses: Sequence[str], fields: Dict[str, Any]) -> bool:
        return await self._transition(LEGACY, job_id, expected_statuses, fields)

    # ------------------------------------------------------------------
    # Lookups used by the completion router
    # ------------------------------------------------------------------

    async def find_job_by_request_id(self, request_id: str) -> Optional[Tuple[str, AnyJob]]:
        """
        Find the job waiting on a provider request.

        Pipeline jobs are checked first, then legacy jobs.

        Returns:
            (kind, job) or None
        """
        for kind in (PIPELINE, LEGACY):
            result = await (
                self.db.table(_TABLE_FOR_KIND[kind])
                .select("*")
                .eq("provider_request_id", request_id)
                .limit(1)
                .execute()
            )
            if result.data:
                return kind, self._parse_job(kind, result.data[0])
        return None

    async def find_stuck_jobs(self, threshold: timedelta) -> List[Tuple[str, AnyJob]]:
        """Jobs still processing whose last update is older than threshold."""
        cutoff = _iso(utcnow() - threshold)
        stuck: List[Tuple[str, AnyJob]] = []
        for kind in (PIPELINE, LEGACY):
            result = await (
                self.db.table(_TABLE_FOR_KIND[kind])
                .select("*")
                .eq("status", "processing")
                .lt("updated_at", cutoff)
                .order("updated_at")
                .execute()
            )
            stuck.extend((kind, self._parse_job(kind, row)) for row in result.data or [])
        return stuck

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def create_batch(self, batch: Batch) -> Batch:
        row = batch.model_dump(mode="json", exclude={"created_at", "completed_at"})
        row["created_at"] = _iso(utcnow())
        result = await self.db.table(BATCHES_TABLE).insert(row).execute()
        return Batch.model_validate(result.data[0] if result.data else row)

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        result = await self.db.table(BATCHES_TABLE).select("*").eq("id", batch_id).limit(1).execute()
        if not result.data:
            return None
        return Batch.model_validate(result.data[0])

    async def update_batch(self, batch_id: str, fields: Dict[str, Any]) -> None:
        await self.db.table(BATCHES_TABLE).update(fields).eq("id", batch_id).execute()

    async def increment_batch_counters(
        self,
        batch_id: str,
        completed: int = 0,
        failed: int = 0
    ) -> Optional[Dict[str, int]]:
        """
        Atomically add to the completed/failed counters.

        The SQL function refuses increments that would push
        completed + failed past total_jobs.

        Returns:
            The new {total_jobs, completed_jobs, failed_jobs}, or None if refused
        """
        result = await self.db.rpc(
            "increment_batch_counters",
            {"p_batch_id": batch_id, "p_completed": completed, "p_failed": failed}
        )
        rows = result.data or []
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            logger.warning("Batch counter increment refused", extra={"batch_id": batch_id})
            return None
        return rows[0]

    async def increment_batch_total(self, batch_id: str) -> Optional[Dict[str, int]]:
        """Atomically add one child to total_jobs (used by regenerate)."""
        result = await self.db.rpc("increment_batch_total", {"p_batch_id": batch_id})
        rows = result.data or []
        if isinstance(rows, dict):
            rows = [rows]
        return rows[0] if rows else None

    async def set_batch_status_if_counters(
        self,
        batch_id: str,
        completed: int,
        failed: int,
        status: str,
        completed_at: Optional[str] = None
    ) -> bool:
        """
        Store the derived status only if the counters are still the ones it was derived from.

        A concurrent child that already moved the counters on will write its
        own (newer) status instead.
        """
        result = await (
            self.db.table(BATCHES_TABLE)
            .update({"status": status, "completed_at": completed_at})
            .eq("id", batch_id)
            .eq("completed_jobs", completed)
            .eq("failed_jobs", failed)
            .execute()
        )
        return bool(result.data)

    async def delete_batch(self, batch_id: str) -> None:
        """Detach children (they are kept), then delete the batch row."""
        await self.db.table(PIPELINE_JOBS_TABLE).update({"batch_id": None}).eq("batch_id", batch_id).execute()
        await self.db.table(JOBS_TABLE).update({"batch_id": None}).eq("batch_id", batch_id).execute()
        await self.db.table(BATCHES_TABLE).delete().eq("id", batch_id).execute()

    # ------------------------------------------------------------------
    # Models and linked accounts
    # ------------------------------------------------------------------

    async def get_models(self, model_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not model_ids:
            return []
        result = await self.db.table(MODELS_TABLE).select("id, name").in_("id", list(model_ids)).execute()
        return result.data or []

    async def get_primary_image_url(self, model_id: str) -> Optional[str]:
        result = await (
            self.db.table(MODEL_IMAGES_TABLE)
            .select("image_url, is_primary")
            .eq("model_id", model_id)
            .order("created_at")
            .execute()
        )
        images = result.data or []
        primary = next((img for img in images if img.get("is_primary")), images[0] if images else None)
        return primary.get("image_url") if primary else None

    async def get_model_account_mappings(self, model_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Rows of {model_id, account_id, platform}."""
        if not model_ids:
            return []
        result = await (
            self.db.table(MODEL_ACCOUNTS_TABLE)
            .select("model_id, account_id, platform")
            .in_("model_id", list(model_ids))
            .execute()
        )
        return result.data or []

    async def get_model_account_targets(
        self,
        model_id: str,
        account_ids: Optional[Sequence[str]] = None
    ) -> List[Tuple[str, str]]:
        """
        Resolve a model's linked distribution accounts to (account_id, platform).

        When account_ids is given (captured in a master batch), only those
        accounts are returned; accounts without a mapping row default to tiktok.
        """
        mappings = await self.get_model_account_mappings([model_id])
        platform_by_account = {row["account_id"]: row.get("platform") or "tiktok" for row in mappings}
        if account_ids is None:
            return list(platform_by_account.items())
        return [(account_id, platform_by_account.get(account_id, "tiktok")) for account_id in account_ids]

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    async def upsert_post(self, post: Post) -> Post:
        """Insert or update the single Post row for (job, account, platform)."""
        now = _iso(utcnow())
        row = post.model_dump(mode="json", exclude={"id", "created_at", "updated_at"})
        row["updated_at"] = now
        result = await (
            self.db.table(POSTS_TABLE)
            .upsert(row, on_conflict="job_id,account_id,platform")
            .execute()
        )
        return Post.model_validate(result.data[0] if result.data else row)

    async def list_posts_for_job(self, job_id: str) -> List[Post]:
        result = await self.db.table(POSTS_TABLE).select("*").eq("job_id", job_id).execute()
        return [Post.model_validate(row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Publish locks
    # ------------------------------------------------------------------

    async def acquire_post_lock(self, lock_key: str, stale_after: timedelta) -> bool:
        """
        Try to take the advisory lock for lock_key.

        A lock older than stale_after is assumed abandoned and removed first.

        Returns:
            True if this caller now holds the lock
        """
        cutoff = _iso(utcnow() - stale_after)
        await self.db.table(LOCKS_TABLE).delete().eq("lock_key", lock_key).lt("locked_at", cutoff).execute()
        result = await (
            self.db.table(LOCKS_TABLE)
            .upsert(
                {"lock_key": lock_key, "locked_at": _iso(utcnow())},
                on_conflict="lock_key",
                ignore_duplicates=True
            )
            .execute()
        )
        return bool(result.data)

    async def release_post_lock(self, lock_key: str) -> None:
        await self.db.table(LOCKS_TABLE).delete().eq("lock_key", lock_key).execute()

    # ------------------------------------------------------------------
    # Idempotency keys
    # ------------------------------------------------------------------

    async def begin_idempotent(self, key: str, request_hash: str, stale_after: timedelta) -> IdempotencyResult:
        """
        Claim an idempotency key for a request.

        States:
            acquired: caller must execute the request and then complete/abandon the key
            processing: another caller holds the key
            completed: the stored response of the earlier execution is returned
            mismatch: the key was used with a different request
        """
        cutoff = _iso(utcnow() - stale_after)
        await (
            self.db.table(IDEMPOTENCY_TABLE)
            .delete()
            .eq("key", key)
            .eq("status", "processing")
            .lt("updated_at", cutoff)
            .execute()
        )

        now = _iso(utcnow())
        inserted = await (
            self.db.table(IDEMPOTENCY_TABLE)
            .upsert(
                {"key": key, "request_hash": request_hash, "status": "processing",
                 "created_at": now, "updated_at": now},
                on_conflict="key",
                ignore_duplicates=True
            )
            .execute()
        )
        if inserted.data:
            return IdempotencyResult("acquired")

        existing = await self.db.table(IDEMPOTENCY_TABLE).select("*").eq("key", key).limit(1).execute()
        if not existing.data:
            # Deleted between our insert and read; the caller may retry
            return IdempotencyResult("processing")
        row = existing.data[0]
        if row.get("request_hash") != request_hash:
            return IdempotencyResult("mismatch")
        if row.get("status") == "completed":
            return IdempotencyResult("completed", row.get("response_json"))
        return IdempotencyResult("processing")

    async def complete_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        await (
            self.db.table(IDEMPOTENCY_TABLE)
            .update({"status": "completed", "response_json": response, "updated_at": _iso(utcnow())})
            .eq("key", key)
            .execute()
        )

    async def abandon_idempotent(self, key: str) -> None:
        await self.db.table(IDEMPOTENCY_TABLE).delete().eq("key", key).execute()


# Singleton instance
job_store = JobStore()
