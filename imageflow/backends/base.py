"""Abstract image backend capability."""

from abc import ABC, abstractmethod
from typing import Optional
from pydantic import BaseModel, Field

from ..models.core import TransformedImage


class BackendResponse(BaseModel):
    """What a provider answered for one transform request.

    Either ``image`` is set, or the provider explains why it produced none
    through ``block_reason`` / ``finish_reason``.
    """
    image: Optional[TransformedImage] = Field(None, description="Generated image, if any")
    block_reason: Optional[str] = Field(None, description="Prompt-level block reason")
    finish_reason: Optional[str] = Field(None, description="Candidate finish reason, STOP on normal completion")
    text: Optional[str] = Field(None, description="Any text the provider returned alongside the image")


class ImageBackend(ABC):
    """A provider capable of performing one image transform call.

    Implementations perform exactly one request per ``generate`` call and
    raise on transport or provider errors; retries live in the client.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identity used in logs, retry events and quota errors."""

    @abstractmethod
    def generate(self, data: bytes, media_type: str, prompt: str, timeout: float) -> BackendResponse:
        """
        Send one image plus instruction to the provider.

        Args:
            data: Encoded image bytes
            media_type: Media type of ``data``
            prompt: Natural-language instruction
            timeout: Request timeout in seconds

        Returns:
            BackendResponse: Image or block/finish reason

        Raises:
            Exception: Any transport or provider error, with its diagnostic text
        """
