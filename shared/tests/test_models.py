"""
Tests for Pydantic data models.
"""

from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from shared.models import (
    Batch,
    BatchVideoGenerationStep,
    BgMusicConfig,
    BgMusicStep,
    ComposeStep,
    MasterConfig,
    MasterModelConfig,
    PipelineJob,
    PipelineStep,
    StepResult,
    TextOverlayStep,
    VideoGenerationStep,
    derive_batch_status,
    derive_post_status,
    enabled_steps,
)

STEPS = TypeAdapter(list[PipelineStep])


class TestPipelineSteps:
    def test_type_tag_selects_step_class(self):
        steps = STEPS.validate_python([
            {"id": "gen", "type": "video-generation", "config": {"mode": "subtle-animation", "image_url": "https://i/a.png"}},
            {"id": "text", "type": "text-overlay", "config": {"text": "Hi"}},
            {"id": "music", "type": "bg-music", "config": {"track_url": "https://m/a.mp3"}},
            {"id": "grid", "type": "compose", "config": {"layers": []}},
        ])

        assert [type(step) for step in steps] == [VideoGenerationStep, TextOverlayStep, BgMusicStep, ComposeStep]

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            STEPS.validate_python([{"id": "x", "type": "teleport", "config": {}}])

    def test_capabilities(self):
        motion, subtle, fan_out, compose = STEPS.validate_python([
            {"id": "a", "type": "video-generation", "config": {"mode": "motion-control"}},
            {"id": "b", "type": "video-generation", "config": {"mode": "subtle-animation"}},
            {"id": "c", "type": "batch-video-generation", "config": {"images": []}},
            {"id": "d", "type": "compose", "config": {}},
        ])

        assert motion.requires_input_video and motion.is_async
        assert not subtle.requires_input_video and subtle.is_async
        assert isinstance(fan_out, BatchVideoGenerationStep) and fan_out.is_async
        assert not compose.requires_input_video and not compose.is_async

    def test_enabled_steps_keeps_order(self):
        steps = STEPS.validate_python([
            {"id": "a", "type": "text-overlay", "config": {"text": "1"}},
            {"id": "b", "type": "text-overlay", "enabled": False, "config": {"text": "2"}},
            {"id": "c", "type": "text-overlay", "config": {"text": "3"}},
        ])
        assert [step.id for step in enabled_steps(steps)] == ["a", "c"]

    def test_fan_out_to_single(self):
        step = STEPS.validate_python([{
            "id": "gen",
            "type": "batch-video-generation",
            "config": {"prompt": "dance", "max_seconds": 8, "images": [{"image_url": "https://i/a.png"}]},
        }])[0]

        single = step.config.to_single("https://i/a.png")

        assert single.image_url == "https://i/a.png"
        assert single.prompt == "dance"
        assert single.max_seconds == 8

    def test_overlay_position_bounds(self):
        with pytest.raises(ValidationError):
            STEPS.validate_python([{"id": "t", "type": "text-overlay", "config": {"text": "x", "custom_x": 120}}])


class TestBgMusicModes:
    def test_explicit_mode_wins(self):
        assert BgMusicConfig(track_url="https://m", audio_mode="replace").effective_audio_mode() == "replace"

    def test_replace_if_any_target_replaces(self):
        config = BgMusicConfig(
            track_url="https://m",
            apply_to_steps=["a", "b"],
            audio_mode_per_step={"a": "mix", "b": "replace"},
        )
        assert config.effective_audio_mode() == "replace"
        assert config.mode_for_step("a") == "mix"
        assert config.mode_for_step("unknown") == "mix"

    def test_default_mix(self):
        assert BgMusicConfig(track_url="https://m").effective_audio_mode() == "mix"


class TestPipelineJob:
    def make_job(self, **fields):
        return PipelineJob(
            id="job-1",
            name="Clip",
            pipeline=[{"id": "t", "type": "text-overlay", "config": {"text": "Hi"}}],
            **fields,
        )

    def test_awaiting_provider(self):
        assert self.make_job(status="processing", provider_request_id="pred-1").awaiting_provider
        assert not self.make_job(status="processing").awaiting_provider
        assert not self.make_job(status="completed", provider_request_id="pred-1").awaiting_provider

    def test_terminal(self):
        assert self.make_job(status="failed").is_terminal
        assert not self.make_job(status="queued").is_terminal

    def test_current_step_not_negative(self):
        with pytest.raises(ValidationError):
            self.make_job(current_step=-1)

    def test_datetime_serialization(self):
        job = self.make_job(created_at=datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc))
        dumped = job.model_dump()
        assert dumped["created_at"] == "2026-10-19T08:30:00+00:00"
        assert dumped["completed_at"] is None

    def test_step_results_roundtrip_from_row(self):
        row = self.make_job(step_results=[
            StepResult(step_id="t", type="text-overlay", label="Text overlay", output_url="https://o/1.mp4")
        ]).model_dump(mode="json")

        assert PipelineJob.model_validate(row).step_results[0].output_url == "https://o/1.mp4"


class TestBatch:
    def test_progress(self):
        assert Batch(id="b", name="B", total_jobs=4, completed_jobs=1, failed_jobs=1).progress == 50
        assert Batch(id="b", name="B").progress == 0

    def test_counters_not_negative(self):
        with pytest.raises(ValidationError):
            Batch(id="b", name="B", completed_jobs=-1)

    def test_master_config_lookup(self):
        config = MasterConfig(models=[MasterModelConfig(model_id="m1", model_name="Ana", account_ids=["a1"])])

        assert config.config_for_model("m1").account_ids == ["a1"]
        assert config.config_for_model("m2") is None
        assert config.publish_mode == "draft"

    @pytest.mark.parametrize("total,completed,failed,expected", [
        (0, 0, 0, "pending"),
        (3, 1, 0, "processing"),
        (3, 3, 0, "completed"),
        (3, 0, 3, "failed"),
        (5, 3, 2, "partial"),
    ])
    def test_derive_batch_status(self, total, completed, failed, expected):
        assert derive_batch_status(total, completed, failed) == expected


def test_derive_post_status_cancelled():
    assert derive_post_status(["cancelled", None]) == "cancelled"
