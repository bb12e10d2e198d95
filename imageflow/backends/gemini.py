"""Gemini image backend over the generateContent REST API."""

import base64
from typing import Any, Dict, Optional

import requests

from ..core.logging import get_logger
from ..models.core import TransformedImage
from .base import BackendResponse, ImageBackend

logger = get_logger(__name__)


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiBackend(ImageBackend):
    """Image editing through a Gemini image model."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None
    ):
        if not model:
            raise ValueError("Gemini model name cannot be empty")
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    @property
    def name(self) -> str:
        return self.model

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def build_payload(self, data: bytes, media_type: str, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{
                "parts": [
                    {"inlineData": {"mimeType": media_type, "data": base64.b64encode(data).decode("ascii")}},
                    {"text": prompt},
                ]
            }],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }

    def generate(self, data: bytes, media_type: str, prompt: str, timeout: float) -> BackendResponse:
        """
        POST one generateContent request.

        Raises:
            requests.HTTPError: On a non-2xx status. The message carries the
                status code and the response body so quota markers such as
                ``429`` / ``RESOURCE_EXHAUSTED`` and ``retryDelay`` survive.
            requests.RequestException: On transport failures
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key

        logger.debug(f"Calling {self.model} with {len(data)} bytes of {media_type}")
        response = self.session.post(
            self.endpoint,
            json=self.build_payload(data, media_type, prompt),
            headers=headers,
            timeout=timeout
        )

        if not response.ok:
            raise requests.HTTPError(
                f"{response.status_code} {response.reason}: {response.text}",
                response=response
            )

        return self.parse_response(response.json())

    def parse_response(self, body: Dict[str, Any]) -> BackendResponse:
        """Map a generateContent JSON body onto a BackendResponse."""
        block_reason = (body.get("promptFeedback") or {}).get("blockReason")

        candidates = body.get("candidates") or []
        if not candidates:
            return BackendResponse(block_reason=block_reason)

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        parts = (candidate.get("content") or {}).get("parts") or []

        image = None
        texts = []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data") and image is None:
                image = TransformedImage(
                    data=base64.b64decode(inline["data"]),
                    media_type=inline.get("mimeType") or inline.get("mime_type") or "image/png"
                )
            elif part.get("text"):
                texts.append(part["text"])

        return BackendResponse(
            image=image,
            block_reason=block_reason,
            finish_reason=finish_reason,
            text="\n".join(texts) or None
        )
