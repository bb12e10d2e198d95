"""Image backends: provider capability, retrying client and registry."""

from .base import BackendResponse, ImageBackend
from .client import BackendClient, QuotaExhausted
from .gemini import GeminiBackend
from .registry import BackendRegistry, create_default_registry

__all__ = [
    "BackendResponse",
    "ImageBackend",
    "BackendClient",
    "QuotaExhausted",
    "GeminiBackend",
    "BackendRegistry",
    "create_default_registry",
]
