"""
Tests for the generation provider client and model input mapping.
"""
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from modules.generation_provider.client import (
    GenerationProviderClient,
    classify_provider_error,
    extract_artifact_url,
)
from modules.generation_provider.config import build_model_input, get_model_config
from shared.errors import GenerationError, RateLimitError, RetryableError
from shared.models.steps import VideoGenerationConfig


def _prediction(status="succeeded", output=None, error=None, prediction_id="pred-1"):
    return SimpleNamespace(id=prediction_id, status=status, output=output, error=error)


@pytest.fixture
def provider():
    client = GenerationProviderClient(api_token="r8_test123456789012345678901234567890")
    client.client = MagicMock()
    return client


class TestExtractArtifactUrl:
    """Prediction outputs come in several shapes."""

    def test_string_output(self):
        assert extract_artifact_url("https://cdn/out.mp4") == "https://cdn/out.mp4"

    def test_list_output_returns_first_url(self):
        assert extract_artifact_url([None, "https://cdn/a.mp4", "https://cdn/b.mp4"]) == "https://cdn/a.mp4"

    def test_nested_video_dict(self):
        assert extract_artifact_url({"video": {"url": "https://cdn/v.mp4"}}) == "https://cdn/v.mp4"

    def test_file_output_object(self):
        assert extract_artifact_url(SimpleNamespace(url="https://cdn/f.mp4")) == "https://cdn/f.mp4"

    def test_empty_output(self):
        assert extract_artifact_url(None) is None
        assert extract_artifact_url({}) is None


class TestClassifyProviderError:
    def test_rate_limit_status(self):
        error = Exception("too many")
        error.status = 429
        assert isinstance(classify_provider_error(error), RateLimitError)

    def test_server_error_is_retryable(self):
        error = Exception("bad gateway")
        error.status = 502
        result = classify_provider_error(error)
        assert isinstance(result, RetryableError)
        assert not isinstance(result, RateLimitError)

    def test_timeout_is_retryable(self):
        assert isinstance(classify_provider_error(httpx.ReadTimeout("slow")), RetryableError)

    def test_other_errors_are_generation_errors(self):
        assert isinstance(classify_provider_error(ValueError("invalid input")), GenerationError)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_registers_completed_webhook(self, provider):
        provider.client.predictions.create.return_value = _prediction(status="starting", prediction_id="req-42")

        request_id = await provider.submit(
            "motion-control",
            {"image": "https://img/a.png", "video": "https://vid/a.mp4"},
            "https://api.example.com/api/v1/provider-webhook",
        )

        assert request_id == "req-42"
        kwargs = provider.client.predictions.create.call_args.kwargs
        assert kwargs["model"] == get_model_config("motion-control")["replicate_string"]
        assert kwargs["webhook"] == "https://api.example.com/api/v1/provider-webhook"
        assert kwargs["webhook_events_filter"] == ["completed"]

    @pytest.mark.asyncio
    async def test_submit_without_webhook(self, provider):
        provider.client.predictions.create.return_value = _prediction(prediction_id="req-1")

        await provider.submit("subtle-animation", {"image": "https://img/a.png"})

        assert "webhook" not in provider.client.predictions.create.call_args.kwargs

    @pytest.mark.asyncio
    @patch("shared.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_submit_retries_transient_errors(self, mock_sleep, provider):
        provider.client.predictions.create.side_effect = [
            httpx.ConnectError("connection reset"),
            _prediction(prediction_id="req-2"),
        ]

        assert await provider.submit("motion-control", {}) == "req-2"
        assert provider.client.predictions.create.call_count == 2
        mock_sleep.assert_awaited()


class TestPolling:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider_status,expected", [
        ("starting", "queued"),
        ("processing", "running"),
        ("succeeded", "completed"),
        ("failed", "failed"),
        ("canceled", "failed"),
        ("something-new", "failed"),
    ])
    async def test_poll_status_mapping(self, provider, provider_status, expected):
        provider.client.predictions.get.return_value = _prediction(status=provider_status)
        assert await provider.poll_status("req-1") == expected

    @pytest.mark.asyncio
    async def test_poll_result_returns_artifact(self, provider):
        provider.client.predictions.get.return_value = _prediction(output="https://cdn/out.mp4")
        assert await provider.poll_result("req-1") == "https://cdn/out.mp4"

    @pytest.mark.asyncio
    async def test_poll_result_requires_completion(self, provider):
        provider.client.predictions.get.return_value = _prediction(status="processing")
        with pytest.raises(GenerationError, match="running"):
            await provider.poll_result("req-1")

    @pytest.mark.asyncio
    async def test_poll_event_carries_error(self, provider):
        provider.client.predictions.get.return_value = _prediction(status="failed", error="NSFW content")
        event = await provider.poll_event("req-1")
        assert event.status == "failed"
        assert event.error == "NSFW content"
        assert not event.succeeded


class TestParseWebhook:
    def test_success_payload(self):
        event = GenerationProviderClient.parse_webhook(
            {"id": "req-1", "status": "succeeded", "output": "https://cdn/out.mp4"}
        )
        assert event.request_id == "req-1"
        assert event.succeeded

    def test_failed_payload_without_error_gets_status_reason(self):
        event = GenerationProviderClient.parse_webhook({"id": "req-1", "status": "canceled"})
        assert event.status == "failed"
        assert event.error == "Provider job status: canceled"

    def test_missing_id_rejected(self):
        with pytest.raises(GenerationError):
            GenerationProviderClient.parse_webhook({"status": "succeeded"})


class TestBuildModelInput:
    def test_motion_control_includes_video_and_defaults(self):
        config = VideoGenerationConfig(mode="motion-control", prompt="dance")
        model_input = build_model_input(config, "https://img/a.png", "https://vid/a.mp4")

        assert model_input["image"] == "https://img/a.png"
        assert model_input["video"] == "https://vid/a.mp4"
        assert model_input["prompt"] == "dance"
        assert model_input["character_orientation"] == "video"

    def test_motion_control_requires_video(self):
        with pytest.raises(ValueError):
            build_model_input(VideoGenerationConfig(mode="motion-control"), "https://img/a.png")

    def test_subtle_animation_maps_optional_parameters(self):
        config = VideoGenerationConfig(
            mode="subtle-animation", duration="6s", resolution="1080p", generate_audio=False
        )
        model_input = build_model_input(config, "https://img/a.png")

        assert "video" not in model_input
        assert model_input["duration"] == 6
        assert model_input["resolution"] == "1080p"
        assert model_input["generate_audio"] is False
        assert model_input["prompt"] == get_model_config("subtle-animation")["default_prompt"]

    def test_motion_control_audio_flag_maps_to_keep_original_sound(self):
        config = VideoGenerationConfig(mode="motion-control", generate_audio=False)
        model_input = build_model_input(config, "https://img/a.png", "https://vid/a.mp4")
        assert model_input["keep_original_sound"] is False
