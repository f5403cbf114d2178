"""
Tests for the completion router: webhook path, recovery path and the
exactly-once resume guard.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from modules.batch_coordinator import BatchCoordinator
from modules.completion_router import CompletionRouter, NO_REQUEST_ID_REASON
from modules.completion_router.router import (
    ALREADY_TERMINAL,
    DUPLICATE,
    FAILED,
    NOT_FOUND,
    PENDING,
    RESUMED,
)
from modules.generation_provider import ProviderEvent
from modules.pipeline_runner import PipelineRunner
from modules.step_executor import PendingProvider, SyncResult
from shared.errors import RetryableError
from shared.job_store import LEGACY, PIPELINE
from shared.models.batch import Batch
from shared.models.job import Job, PipelineJob
from shared.models.steps import TextOverlayConfig, TextOverlayStep, VideoGenerationConfig, VideoGenerationStep

LONG_AGO = datetime.now(timezone.utc) - timedelta(hours=1)


def three_step_job(job_id="job-1", **fields):
    return PipelineJob(
        id=job_id,
        name="Scenario job",
        pipeline=[
            TextOverlayStep(id="intro-text", config=TextOverlayConfig(text="Hi")),
            VideoGenerationStep(id="gen", config=VideoGenerationConfig(image_url="https://img/a.png")),
            TextOverlayStep(id="outro-text", config=TextOverlayConfig(text="Bye")),
        ],
        video_url="https://store/source.mp4",
        **fields
    )


def success(request_id="req-1"):
    return ProviderEvent(request_id=request_id, status="completed", artifact_url="https://cdn/out.mp4")


@pytest.fixture
def mock_storage():
    storage = MagicMock()
    storage.upload_file = AsyncMock(side_effect=lambda path, name: f"https://store/{name}")
    storage.upload = AsyncMock(side_effect=lambda data, name, content_type=None: f"https://store/{name}")
    storage.download_to_bytes = AsyncMock(return_value=b"video")
    storage.object_path_from_url = MagicMock(return_value="pipeline/source.mp4")
    return storage


@pytest.fixture
def mock_executor():
    executor = MagicMock()

    async def _execute(step, context):
        if isinstance(step, VideoGenerationStep):
            return PendingProvider(request_id="req-1", mode=step.config.mode)
        return SyncResult(path=f"/tmp/{step.id}.mp4")

    executor.execute = AsyncMock(side_effect=_execute)
    executor.consume_provider_result = AsyncMock(return_value="/tmp/generated.mp4")
    return executor


@pytest.fixture
def mock_provider():
    provider = MagicMock()
    provider.poll_event = AsyncMock(return_value=success())
    return provider


@pytest.fixture
def coordinator(fake_store, fake_cache, mock_storage, task_recorder):
    return BatchCoordinator(store=fake_store, cache=fake_cache, storage_client=mock_storage, enqueue=task_recorder)


@pytest.fixture
def runner(fake_store, mock_executor, mock_storage, coordinator):
    return PipelineRunner(
        store=fake_store,
        executor=mock_executor,
        storage_client=mock_storage,
        batch_notifier=coordinator.on_child_terminal,
    )


@pytest.fixture
def router(fake_store, runner, mock_provider, fake_cache, task_recorder):
    return CompletionRouter(
        store=fake_store, runner=runner, provider=mock_provider, cache=fake_cache, enqueue=task_recorder
    )


async def suspended_job(fake_store, runner, **fields):
    await fake_store.create_pipeline_job(three_step_job(**fields))
    assert await runner.run("job-1") == "processing"


class TestResume:
    @pytest.mark.asyncio
    async def test_second_resume_with_same_outcome_is_noop(self, router, fake_store, runner, mock_storage):
        await suspended_job(fake_store, runner)

        first = await router.resume(PIPELINE, "job-1", "req-1", success())
        second = await router.resume(PIPELINE, "job-1", "req-1", success())

        assert first == RESUMED
        assert second == ALREADY_TERMINAL
        completions = [t for t in fake_store.transitions if t[1] == "completed"]
        assert len(completions) == 1
        generated = [c for c in mock_storage.upload_file.call_args_list if c.args[1].endswith("step-1.mp4")]
        assert len(generated) == 1

    @pytest.mark.asyncio
    async def test_concurrent_resumes_apply_once(self, router, fake_store, runner, mock_executor):
        await suspended_job(fake_store, runner)

        results = await asyncio.gather(
            router.resume(PIPELINE, "job-1", "req-1", success()),
            router.resume(PIPELINE, "job-1", "req-1", success()),
        )

        assert sorted(results) in ([DUPLICATE, RESUMED], [ALREADY_TERMINAL, RESUMED])
        mock_executor.consume_provider_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_request_id_is_rejected(self, router, fake_store, runner):
        await suspended_job(fake_store, runner)

        assert await router.resume(PIPELINE, "job-1", "old-request", success("old-request")) == DUPLICATE
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "processing"
        assert job.provider_request_id == "req-1"

    @pytest.mark.asyncio
    async def test_provider_failure_fails_job_with_reason(self, router, fake_store, runner):
        await suspended_job(fake_store, runner)
        outcome = ProviderEvent(request_id="req-1", status="failed", error="Content policy violation")

        assert await router.resume(PIPELINE, "job-1", "req-1", outcome) == FAILED

        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "failed"
        assert job.error == "Content policy violation"
        assert [r.step_id for r in job.step_results] == ["intro-text"]

    @pytest.mark.asyncio
    async def test_completed_without_artifact_fails(self, router, fake_store, runner):
        await suspended_job(fake_store, runner)
        outcome = ProviderEvent(request_id="req-1", status="completed")

        assert await router.resume(PIPELINE, "job-1", "req-1", outcome) == FAILED

    @pytest.mark.asyncio
    async def test_non_final_outcome_is_pending(self, router, fake_store, runner):
        await suspended_job(fake_store, runner)
        outcome = ProviderEvent(request_id="req-1", status="running")

        assert await router.resume(PIPELINE, "job-1", "req-1", outcome) == PENDING

    @pytest.mark.asyncio
    async def test_unknown_job(self, router):
        assert await router.resume(PIPELINE, "missing", "req-1", success()) == NOT_FOUND

    @pytest.mark.asyncio
    async def test_legacy_job_completed(self, router, fake_store):
        await fake_store.create_job(Job(id="legacy-1", status="processing", provider_request_id="req-9"))

        assert await router.resume(LEGACY, "legacy-1", "req-9", success("req-9")) == RESUMED

        job = await fake_store.get_job("legacy-1")
        assert job.status == "completed"
        assert job.output_url == "https://store/jobs/legacy-1/output.mp4"


class TestWebhookPath:
    @pytest.mark.asyncio
    async def test_webhook_acknowledges_and_enqueues(self, router, task_recorder):
        body = {"id": "req-1", "status": "succeeded", "output": "https://cdn/out.mp4"}

        assert await router.handle_webhook(body) == {"received": True}

        queued = task_recorder.of_type("resume_completion")
        assert len(queued) == 1
        assert queued[0]["event"]["request_id"] == "req-1"
        assert queued[0]["event"]["artifact_url"] == "https://cdn/out.mp4"

    @pytest.mark.asyncio
    async def test_malformed_webhook_is_acknowledged(self, router, task_recorder):
        assert await router.handle_webhook({"status": "succeeded"}) == {"received": True}
        assert task_recorder.tasks == []

    @pytest.mark.asyncio
    async def test_non_terminal_webhook_is_dropped(self, router, task_recorder):
        assert await router.handle_webhook({"id": "req-1", "status": "processing"}) == {"received": True}
        assert task_recorder.tasks == []

    @pytest.mark.asyncio
    async def test_event_for_unknown_request_is_dropped(self, router):
        assert await router.process_event(success("nobody")) == NOT_FOUND

    @pytest.mark.asyncio
    async def test_webhook_success_runs_remaining_steps(self, router, fake_store, runner, task_recorder):
        """Sync step, provider step, sync step: the webhook finishes the job."""
        await suspended_job(fake_store, runner)

        await router.handle_webhook({"id": "req-1", "status": "succeeded", "output": "https://cdn/out.mp4"})
        event = ProviderEvent(**task_recorder.of_type("resume_completion")[0]["event"])
        assert await router.process_event(event) == RESUMED

        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "completed"
        assert len(job.step_results) == 3
        assert job.current_step == 3

    @pytest.mark.asyncio
    async def test_redelivered_webhook_has_no_effect(self, router, fake_store, runner):
        await suspended_job(fake_store, runner)

        assert await router.process_event(success()) == RESUMED
        assert await router.process_event(success()) == NOT_FOUND
        assert len([t for t in fake_store.transitions if t[1] == "completed"]) == 1


class TestRecoveryPath:
    @pytest.mark.asyncio
    async def test_recovery_resumes_completed_provider_job(self, router, fake_store, runner, mock_provider):
        """Webhook never arrives; the sweep polls and resumes the same way."""
        await suspended_job(fake_store, runner)
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)

        summary = await router.recover_stuck_jobs()

        assert summary["skipped"] is False
        assert summary["checked"] == 1
        assert summary["results"][0]["action"] == "recovered"
        mock_provider.poll_event.assert_awaited_once_with("req-1")
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "completed"
        assert len(job.step_results) == 3

    @pytest.mark.asyncio
    async def test_recent_jobs_are_not_stuck(self, router, fake_store, runner, mock_provider):
        await suspended_job(fake_store, runner)

        summary = await router.recover_stuck_jobs()

        assert summary["checked"] == 0
        mock_provider.poll_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_job_without_request_id_fails_and_batch_counts_once(self, router, fake_store, coordinator):
        await fake_store.create_batch(Batch(id="batch-1", name="B", status="processing", total_jobs=2))
        await fake_store.create_pipeline_job(three_step_job(status="processing", batch_id="batch-1"))
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)

        first = await router.recover_stuck_jobs()
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)
        second = await router.recover_stuck_jobs(force=True)

        assert first["results"][0]["action"] == "no_request_id"
        assert second["checked"] == 0
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "failed"
        assert "no request ID was stored for recovery" in job.error
        assert job.error == NO_REQUEST_ID_REASON
        batch = await fake_store.get_batch("batch-1")
        assert batch.failed_jobs == 1
        assert batch.completed_jobs == 0

    @pytest.mark.asyncio
    async def test_still_running_updates_note_only(self, router, fake_store, runner, mock_provider):
        await suspended_job(fake_store, runner)
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)
        mock_provider.poll_event.return_value = ProviderEvent(request_id="req-1", status="running")

        summary = await router.recover_stuck_jobs()

        assert summary["results"][0]["action"] == "still_running"
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "processing"
        assert job.provider_request_id == "req-1"
        assert job.recovery_attempts == 1
        assert job.current_step == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, router, fake_store, runner, mock_provider):
        await suspended_job(fake_store, runner)
        mock_provider.poll_event.return_value = ProviderEvent(request_id="req-1", status="queued")

        actions = []
        for _ in range(3):
            fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)
            summary = await router.recover_stuck_jobs(force=True)
            actions.append(summary["results"][0]["action"])

        assert actions == ["still_running", "still_running", "failed"]
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "failed"
        assert job.error == "Provider did not complete after 3 recovery attempts"
        # A late webhook cannot revive it
        assert await router.process_event(success()) == NOT_FOUND

    @pytest.mark.asyncio
    async def test_provider_failure_found_by_sweep(self, router, fake_store, runner, mock_provider):
        await suspended_job(fake_store, runner)
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)
        mock_provider.poll_event.return_value = ProviderEvent(
            request_id="req-1", status="failed", error="Provider job status: canceled"
        )

        summary = await router.recover_stuck_jobs()

        assert summary["results"][0]["action"] == "failed"
        job = await fake_store.get_pipeline_job("job-1")
        assert job.error == "Provider job status: canceled"

    @pytest.mark.asyncio
    async def test_poll_error_leaves_job_untouched(self, router, fake_store, runner, mock_provider):
        await suspended_job(fake_store, runner)
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)
        mock_provider.poll_event.side_effect = RetryableError("provider 503")

        summary = await router.recover_stuck_jobs()

        assert summary["results"][0]["action"] == "error"
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "processing"
        assert job.recovery_attempts == 0

    @pytest.mark.asyncio
    async def test_sweeps_inside_min_interval_are_skipped(self, router, fake_store):
        first = await router.recover_stuck_jobs()
        second = await router.recover_stuck_jobs()

        assert first["skipped"] is False
        assert second == {"skipped": True, "checked": 0, "results": []}

    @pytest.mark.asyncio
    async def test_webhook_after_recovery_is_noop(self, router, fake_store, runner):
        await suspended_job(fake_store, runner)
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)

        await router.recover_stuck_jobs()

        assert await router.resume(PIPELINE, "job-1", "req-1", success()) == ALREADY_TERMINAL
        assert len([t for t in fake_store.transitions if t[1] == "completed"]) == 1


class TestInterruptedResume:
    """The worker holding the claim dies before the step's output is recorded."""

    async def claimed_then_killed(self, fake_store, runner):
        await suspended_job(fake_store, runner)
        assert await fake_store.claim_request(PIPELINE, "job-1", "req-1")
        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)

    @pytest.mark.asyncio
    async def test_sweep_reapplies_completed_outcome(self, router, fake_store, runner, mock_provider, mock_executor):
        await self.claimed_then_killed(fake_store, runner)

        summary = await router.recover_stuck_jobs(force=True)

        assert summary["results"][0]["action"] == "recovered"
        mock_provider.poll_event.assert_awaited_once_with("req-1")
        mock_executor.consume_provider_result.assert_awaited_once()
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "completed"
        assert [r.step_id for r in job.step_results] == ["intro-text", "gen", "outro-text"]
        assert job.error is None
        assert job.resumed_request_id is None

    @pytest.mark.asyncio
    async def test_sweep_applies_provider_failure(self, router, fake_store, runner, mock_provider):
        await self.claimed_then_killed(fake_store, runner)
        mock_provider.poll_event.return_value = ProviderEvent(
            request_id="req-1", status="failed", error="Content policy violation"
        )

        summary = await router.recover_stuck_jobs(force=True)

        assert summary["results"][0]["action"] == "failed"
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "failed"
        assert job.error == "Content policy violation"

    @pytest.mark.asyncio
    async def test_two_sweeps_on_same_snapshot_apply_once(self, router, fake_store, runner, mock_executor):
        await self.claimed_then_killed(fake_store, runner)
        stuck = await fake_store.get_pipeline_job("job-1")

        assert await fake_store.reclaim_resumed_request(PIPELINE, "job-1", "req-1", stuck.updated_at)
        assert not await fake_store.reclaim_resumed_request(PIPELINE, "job-1", "req-1", stuck.updated_at)

        fake_store.set_updated_at(PIPELINE, "job-1", LONG_AGO)
        stale = await fake_store.get_pipeline_job("job-1")
        results = await asyncio.gather(
            router._recover_one(PIPELINE, stale),
            router._recover_one(PIPELINE, stale),
        )

        assert sorted(r["action"] for r in results) == ["recovered", "skipped"]
        mock_executor.consume_provider_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_error_keeps_claim_for_next_sweep(self, router, fake_store, runner, mock_provider):
        await self.claimed_then_killed(fake_store, runner)
        mock_provider.poll_event.side_effect = RetryableError("provider 503")

        summary = await router.recover_stuck_jobs(force=True)

        assert summary["results"][0]["action"] == "error"
        job = await fake_store.get_pipeline_job("job-1")
        assert job.status == "processing"
        assert job.resumed_request_id == "req-1"

    @pytest.mark.asyncio
    async def test_recorded_step_clears_resumed_request(self, router, fake_store, runner):
        """Once the resumed step is stored, a later stall is not mistaken for an interrupted resume."""
        await fake_store.create_pipeline_job(PipelineJob(
            id="job-1",
            name="Two generations",
            pipeline=[
                VideoGenerationStep(id="gen-a", config=VideoGenerationConfig(image_url="https://img/a.png")),
                VideoGenerationStep(id="gen-b", config=VideoGenerationConfig(image_url="https://img/b.png")),
            ],
            video_url="https://store/source.mp4",
        ))
        assert await runner.run("job-1") == "processing"

        assert await router.resume(PIPELINE, "job-1", "req-1", success()) == RESUMED

        job = await fake_store.get_pipeline_job("job-1")
        assert job.current_step == 1
        assert job.resumed_request_id is None
        assert job.provider_request_id == "req-1"
