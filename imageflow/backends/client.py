"""Backend client: one provider wrapped with the shared retry policy."""

from dataclasses import dataclass
from typing import Callable, Optional, Union

from ..core.cancellation import CancellationToken
from ..core.error_recovery import ErrorKind, RetryPolicy, classify_provider_error, execute_with_retry
from ..core.exceptions import (
    EmptyResponseError,
    FatalBackendError,
    RateLimitedError,
    RejectedError,
)
from ..core.logging import RetryLogger, get_logger
from ..models.core import RetryEvent, TransformedImage
from .base import BackendResponse, ImageBackend

logger = get_logger(__name__)


@dataclass(frozen=True)
class QuotaExhausted:
    """Returned, not raised, when a backend used up its retries on quota errors."""
    backend: str
    reason: str
    attempts: int


RetryCallback = Callable[[RetryEvent], None]


class BackendClient:
    """Performs one logical transform against one backend.

    Quota and rate-limit errors are retried under ``policy``. Policy
    rejections, empty responses and unrecognised errors are raised at once.
    """

    def __init__(self, backend: ImageBackend, policy: Optional[RetryPolicy] = None, timeout: float = 120.0):
        self.backend = backend
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.retry_logger = RetryLogger("backend_client")

    @property
    def name(self) -> str:
        return self.backend.name

    def transform(
        self,
        data: bytes,
        media_type: str,
        prompt: str,
        cancel_token: CancellationToken,
        on_retry: Optional[RetryCallback] = None
    ) -> Union[TransformedImage, QuotaExhausted]:
        """
        Transform an image, retrying on quota errors.

        Args:
            data: Encoded image bytes
            media_type: Media type of ``data``
            prompt: Instruction for the backend
            cancel_token: Checked before every attempt and around every sleep
            on_retry: Called with a RetryEvent before each backoff sleep

        Returns:
            TransformedImage on success, QuotaExhausted once retries run out

        Raises:
            WorkflowCancelledError: If the token is signaled
            RejectedError: If the provider blocked the request
            EmptyResponseError: If the provider returned no image and no reason
            FatalBackendError: For any error the classifier does not recognise
        """
        def notify(retry: int, delay: float, error: Exception) -> None:
            if on_retry:
                on_retry(RetryEvent(backend=self.name, attempt=retry, delay=delay, reason=str(error)))

        try:
            response = execute_with_retry(
                lambda: self._attempt(data, media_type, prompt),
                self.policy,
                (RateLimitedError,),
                sleep=cancel_token.sleep_or_raise,
                before_attempt=cancel_token.raise_if_cancelled,
                on_retry=notify,
                name=self.name,
                retry_logger=self.retry_logger
            )
        except RateLimitedError as e:
            return QuotaExhausted(backend=self.name, reason=str(e), attempts=self.policy.max_attempts)

        return self._extract_image(response)

    def _attempt(self, data: bytes, media_type: str, prompt: str) -> BackendResponse:
        """One provider call, with its errors classified."""
        try:
            return self.backend.generate(data, media_type, prompt, self.timeout)
        except Exception as e:
            kind = classify_provider_error(e)
            if kind == ErrorKind.QUOTA:
                raise RateLimitedError(str(e), backend=self.name) from e
            if kind == ErrorKind.REJECTED:
                raise RejectedError(str(e), backend=self.name) from e
            raise FatalBackendError(str(e), backend=self.name) from e

    def _extract_image(self, response: BackendResponse) -> TransformedImage:
        if response.image is not None and response.image.data:
            return response.image

        if response.block_reason:
            raise RejectedError(response.block_reason, backend=self.name)
        if response.finish_reason and response.finish_reason != "STOP":
            raise RejectedError(response.finish_reason, backend=self.name)

        if response.text:
            logger.warning(f"Backend {self.name} returned text but no image: {response.text[:200]}")
        raise EmptyResponseError(backend=self.name)
