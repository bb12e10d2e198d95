"""Tests for the Gemini REST backend and the backend registry."""

import base64
from unittest.mock import MagicMock

import pytest
import requests

from imageflow.backends.gemini import GeminiBackend
from imageflow.backends.registry import BackendRegistry, create_default_registry
from imageflow.core.error_recovery import ErrorKind, classify_provider_error
from imageflow.core.exceptions import ConfigurationError


def fake_response(status_code=200, body=None, text="", reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.reason = reason
    response.text = text
    response.json.return_value = body or {}
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def backend(session):
    return GeminiBackend("gemini-test-image", api_key="secret", base_url="https://example.test/v1beta/",
                         session=session)


class TestGeminiBackend:
    """Test cases for GeminiBackend."""

    def test_request_shape(self, backend, session):
        session.post.return_value = fake_response(body={"candidates": []})

        backend.generate(b"raw", "image/png", "add a llama", timeout=12.0)

        args, kwargs = session.post.call_args
        assert args[0] == "https://example.test/v1beta/models/gemini-test-image:generateContent"
        assert kwargs["headers"]["x-goog-api-key"] == "secret"
        assert kwargs["timeout"] == 12.0
        parts = kwargs["json"]["contents"][0]["parts"]
        assert parts[0]["inlineData"] == {"mimeType": "image/png", "data": base64.b64encode(b"raw").decode()}
        assert parts[1] == {"text": "add a llama"}

    def test_image_response(self, backend, session):
        encoded = base64.b64encode(b"edited").decode()
        session.post.return_value = fake_response(body={
            "candidates": [{
                "finishReason": "STOP",
                "content": {"parts": [
                    {"text": "Here you go"},
                    {"inlineData": {"mimeType": "image/webp", "data": encoded}},
                ]}
            }]
        })

        response = backend.generate(b"raw", "image/png", "p", timeout=5.0)

        assert response.image.data == b"edited"
        assert response.image.media_type == "image/webp"
        assert response.finish_reason == "STOP"
        assert response.text == "Here you go"

    def test_prompt_blocked(self, backend, session):
        session.post.return_value = fake_response(body={"promptFeedback": {"blockReason": "SAFETY"}})

        response = backend.generate(b"raw", "image/png", "p", timeout=5.0)

        assert response.image is None
        assert response.block_reason == "SAFETY"

    def test_candidate_without_image(self, backend, session):
        session.post.return_value = fake_response(body={
            "candidates": [{"finishReason": "IMAGE_SAFETY", "content": {"parts": []}}]
        })

        response = backend.generate(b"raw", "image/png", "p", timeout=5.0)

        assert response.image is None
        assert response.finish_reason == "IMAGE_SAFETY"

    def test_http_error_keeps_quota_markers(self, backend, session):
        session.post.return_value = fake_response(
            status_code=429,
            reason="Too Many Requests",
            text='{"error": {"status": "RESOURCE_EXHAUSTED", "details": [{"retryDelay": "20s"}]}}'
        )

        with pytest.raises(requests.HTTPError) as exc_info:
            backend.generate(b"raw", "image/png", "p", timeout=5.0)

        assert "RESOURCE_EXHAUSTED" in str(exc_info.value)
        assert classify_provider_error(exc_info.value) == ErrorKind.QUOTA

    def test_empty_model_rejected(self):
        with pytest.raises(ValueError):
            GeminiBackend("", api_key="secret")


class TestBackendRegistry:
    """Test cases for BackendRegistry."""

    def test_default_registry_builds_clients_in_order(self, config):
        clients = create_default_registry().build_clients(config)

        assert [client.name for client in clients] == ["primary-model", "secondary-model"]
        assert clients[0].policy.max_retries == config.max_retries
        assert clients[0].timeout == config.request_timeout

    def test_unknown_provider(self, config):
        config = config.model_copy(update={"backend_provider": "nope"})

        with pytest.raises(ConfigurationError):
            create_default_registry().build_clients(config)

    def test_no_models(self, config):
        config = config.model_copy(update={"backend_models": []})

        with pytest.raises(ConfigurationError):
            create_default_registry().build_clients(config)

    def test_register_custom_provider(self, config):
        registry = BackendRegistry()
        created = []

        def factory(model, app_config):
            backend = GeminiBackend(model, api_key=app_config.api_key)
            created.append(backend)
            return backend

        registry.register_provider("custom", factory)
        clients = registry.build_clients(config.model_copy(update={"backend_provider": "custom"}))

        assert [backend.model for backend in created] == ["primary-model", "secondary-model"]
        assert len(clients) == 2

    def test_duplicate_provider(self):
        registry = create_default_registry()

        with pytest.raises(ConfigurationError):
            registry.register_provider("gemini", lambda model, config: None)

    def test_unregister_provider(self):
        registry = create_default_registry()

        assert registry.unregister_provider("gemini") is True
        assert registry.unregister_provider("gemini") is False
        assert registry.list_providers() == []
