"""Tests for data models, step presets and configuration."""

import base64

import pytest
from pydantic import ValidationError

from imageflow.config import AppConfig, get_profile_config, get_testing_config, validate_config
from imageflow.core.cancellation import CancellationToken
from imageflow.core.exceptions import WorkflowCancelledError
from imageflow.models.core import InputImage, OutputImage, StepDefinition, StepKind
from imageflow.models.presets import (
    PREBUILT_PROMPTS, custom_step, custom_step_name, list_prebuilt_steps, prebuilt_step
)


class TestInputImage:
    """Test cases for InputImage construction."""

    def test_from_base64(self):
        image = InputImage.from_base64("a.png", base64.b64encode(b"abc").decode(), "image/png")

        assert image.data == b"abc"
        assert image.media_type == "image/png"
        assert image.id

    def test_from_data_url(self):
        image = InputImage.from_data_url("a.jpg", "data:image/jpeg;base64," + base64.b64encode(b"xyz").decode())

        assert image.data == b"xyz"
        assert image.media_type == "image/jpeg"

    def test_invalid_base64(self):
        with pytest.raises(ValueError):
            InputImage.from_base64("a.png", "%%%", "image/png")

    def test_invalid_data_url(self):
        with pytest.raises(ValueError):
            InputImage.from_data_url("a.png", "image/png;base64,abc")

    def test_empty_data_rejected(self):
        with pytest.raises(ValidationError):
            InputImage(name="a.png", data=b"", media_type="image/png")


class TestOutputImage:
    """Test cases for OutputImage helpers."""

    def test_data_url_and_download_name(self):
        output = OutputImage(original_image_id="i1", original_file_name="my photo (1).png",
                             data=b"out", media_type="image/png")

        assert output.to_data_url() == "data:image/png;base64," + base64.b64encode(b"out").decode()
        assert output.download_name == "edited-my_photo__1_.png"

    def test_json_dump_encodes_bytes(self):
        output = OutputImage(original_image_id="i1", original_file_name="a.png",
                             data=b"\x89PNG", media_type="image/png")

        dumped = output.model_dump(mode="json")

        assert base64.b64decode(dumped["data"]) == b"\x89PNG"
        assert output.model_dump()["data"] == b"\x89PNG"


class TestStepPresets:
    """Test cases for pre-built and custom steps."""

    def test_prebuilt_steps_have_fresh_ids(self):
        first = list_prebuilt_steps()
        second = list_prebuilt_steps()

        assert [s.name for s in first] == [p["name"] for p in PREBUILT_PROMPTS]
        assert all(s.kind == StepKind.PREBUILT for s in first)
        assert {s.id for s in first}.isdisjoint({s.id for s in second})

    def test_prebuilt_step_by_name(self):
        step = prebuilt_step("Vintage Look", step_id="v1")

        assert step.id == "v1"
        assert "sepia" in step.prompt

    def test_unknown_preset(self):
        with pytest.raises(KeyError):
            prebuilt_step("Nope")

    def test_custom_step_name_truncated(self):
        assert custom_step_name("make the sky purple and add stars") == "Custom: make the sky purple ..."
        assert custom_step_name("short prompt") == "Custom: short prompt"

    def test_custom_step(self):
        step = custom_step("  add a hat  ")

        assert step.prompt == "add a hat"
        assert step.kind == StepKind.CUSTOM

    def test_custom_step_requires_prompt(self):
        with pytest.raises(ValueError):
            custom_step("   ")

    def test_blank_prompt_rejected(self):
        with pytest.raises(ValidationError):
            StepDefinition(name="Empty", prompt=" ")


class TestCancellationToken:
    """Test cases for CancellationToken."""

    def test_cancel_is_idempotent_and_keeps_first_reason(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.is_cancelled
        assert token.reason == "first"
        with pytest.raises(WorkflowCancelledError):
            token.raise_if_cancelled()

    def test_sleep_wakes_when_cancelled(self):
        token = CancellationToken()
        token.cancel()

        assert token.sleep(30) is True

    def test_zero_sleep(self):
        assert CancellationToken().sleep(0) is False

    def test_sleep_or_raise(self):
        token = CancellationToken()
        token.sleep_or_raise(0)

        token.cancel("stop")
        with pytest.raises(WorkflowCancelledError):
            token.sleep_or_raise(30)


class TestAppConfig:
    """Test cases for configuration."""

    def test_defaults(self):
        config = AppConfig()

        assert config.max_retries == 3
        assert config.initial_backoff_ms == 1000
        assert config.max_backoff_ms == 30000
        assert config.failover_pause == 0.25
        assert config.cost_per_step == 0.0025
        assert config.credits_per_step == 1
        assert config.allow_branching is False
        assert config.max_retained_runs == 50
        assert config.log_format is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("IMAGEFLOW_BACKEND_MODELS", "model-a,model-b")
        monkeypatch.setenv("IMAGEFLOW_MAX_RETRIES", "5")
        monkeypatch.setenv("IMAGEFLOW_ALLOW_BRANCHING", "true")
        monkeypatch.delenv("IMAGEFLOW_API_KEY", raising=False)
        monkeypatch.setenv("GEMINI_API_KEY", "from-gemini-env")

        config = AppConfig.from_env()

        assert config.backend_models == ["model-a", "model-b"]
        assert config.max_retries == 5
        assert config.allow_branching is True
        assert config.api_key == "from-gemini-env"

    def test_from_mapping(self):
        config = AppConfig.from_env({
            "IMAGEFLOW_MAX_RETAINED_RUNS": "3",
            "IMAGEFLOW_LOG_LEVEL": "debug",
            "IMAGEFLOW_CORS_ORIGINS": "https://a.example,https://b.example",
        })

        assert config.max_retained_runs == 3
        assert config.log_level.value == "DEBUG"
        assert config.cors_origins == ["https://a.example", "https://b.example"]
        assert config.api_key is None

    def test_retained_runs_must_be_positive(self):
        with pytest.raises(ValidationError):
            AppConfig(max_retained_runs=0)

    def test_unknown_profile(self):
        assert get_profile_config("development").debug is True
        with pytest.raises(ValueError):
            get_profile_config("production")

    def test_negative_retry_settings_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(max_retries=-1)

    def test_validate_config_backoff_order(self):
        config = get_testing_config().model_copy(update={"initial_backoff_ms": 5000, "max_backoff_ms": 100})

        with pytest.raises(ValueError):
            validate_config(config)
