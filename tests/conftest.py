"""Pytest configuration and fixtures."""

import threading
from typing import List, Optional

import pytest

from imageflow.backends.base import BackendResponse, ImageBackend
from imageflow.backends.client import BackendClient
from imageflow.config import get_testing_config
from imageflow.core.cancellation import CancellationToken
from imageflow.core.error_recovery import RetryPolicy
from imageflow.models.core import EdgeDefinition, InputImage, StepDefinition, TransformedImage, WorkflowGraph
from imageflow.storage.database import init_database, reset_database_engine


QUOTA_MESSAGE = "429 Too Many Requests: RESOURCE_EXHAUSTED quota exceeded"


class FakeBackend(ImageBackend):
    """Scripted backend.

    Each call consumes the next script item: an exception is raised, a
    BackendResponse is returned, ``None`` means success. Once the script is
    exhausted every call succeeds, unless ``always`` holds an exception.
    Success appends ``|<prompt>`` to the image bytes.
    """

    def __init__(self, name: str = "fake-model", script: Optional[list] = None,
                 always: Optional[Exception] = None, gate: Optional[threading.Event] = None):
        self._name = name
        self.script = list(script or [])
        self.always = always
        self.gate = gate
        self.started = threading.Event()
        self.calls: List[dict] = []

    @property
    def name(self) -> str:
        return self._name

    def generate(self, data, media_type, prompt, timeout):
        self.calls.append({"data": data, "media_type": media_type, "prompt": prompt})
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)

        item = self.script.pop(0) if self.script else self.always
        if isinstance(item, Exception):
            raise item
        if isinstance(item, BackendResponse):
            return item
        return BackendResponse(
            image=TransformedImage(data=data + b"|" + prompt.encode(), media_type=media_type),
            finish_reason="STOP"
        )


class RecordingCancellationToken(CancellationToken):
    """Token whose sleeps return at once and are recorded."""

    def __init__(self, cancel_on_sleep: Optional[int] = None):
        super().__init__()
        self.sleeps: List[float] = []
        self.cancel_on_sleep = cancel_on_sleep

    def sleep(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        if self.cancel_on_sleep is not None and len(self.sleeps) >= self.cancel_on_sleep:
            self.cancel()
        return self.is_cancelled


def make_client(backend: ImageBackend, max_retries: int = 3) -> BackendClient:
    return BackendClient(backend, policy=RetryPolicy(max_retries=max_retries, base_delay=1.0, max_delay=30.0))


def make_image(name: str = "photo.png", data: bytes = b"png-bytes") -> InputImage:
    return InputImage(name=name, data=data, media_type="image/png")


def chain_graph(*names: str) -> WorkflowGraph:
    """Graph whose steps are connected in the given order; step ids are s1, s2, ..."""
    steps = [StepDefinition(id=f"s{i}", name=name, prompt=f"prompt {name}") for i, name in enumerate(names, start=1)]
    edges = [
        EdgeDefinition(from_step=steps[i].id, to_step=steps[i + 1].id)
        for i in range(len(steps) - 1)
    ]
    return WorkflowGraph(steps=steps, edges=edges)


@pytest.fixture
def config():
    """Testing configuration with zero backoff."""
    return get_testing_config()


@pytest.fixture
def temp_db(tmp_path):
    """Point the storage layer at a fresh SQLite file."""
    database_url = f"sqlite:///{tmp_path / 'imageflow_test.db'}"
    init_database(database_url, connect_args={"check_same_thread": False})
    yield database_url
    reset_database_engine()


@pytest.fixture
def token():
    return RecordingCancellationToken()
