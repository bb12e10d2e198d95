"""Failover across an ordered list of backends."""

from typing import List, Optional, Sequence

from ..backends.client import BackendClient, QuotaExhausted, RetryCallback
from ..models.core import TransformedImage
from .cancellation import CancellationToken
from .exceptions import ConfigurationError, QuotaError
from .logging import get_logger

logger = get_logger(__name__)


class FailoverExecutor:
    """Tries backends in preference order for one logical transform.

    Only quota exhaustion moves on to the next backend. Cancellation and
    every other error propagate from the backend that raised them.
    """

    def __init__(self, failover_pause: float = 0.25):
        """
        Args:
            failover_pause: Seconds to wait before switching backends
        """
        self.failover_pause = failover_pause

    def run(
        self,
        data: bytes,
        media_type: str,
        prompt: str,
        backends: Sequence[BackendClient],
        cancel_token: CancellationToken,
        on_retry: Optional[RetryCallback] = None
    ) -> TransformedImage:
        """
        Transform an image on the first backend that is not out of quota.

        Args:
            data: Encoded image bytes
            media_type: Media type of ``data``
            prompt: Instruction for the backend
            backends: Clients in preference order
            cancel_token: Run cancellation token
            on_retry: Forwarded to every client

        Returns:
            TransformedImage: Result from the first backend that succeeded

        Raises:
            ConfigurationError: If ``backends`` is empty
            QuotaError: If every backend exhausted its retries
            WorkflowCancelledError: If the token is signaled
        """
        if not backends:
            raise ConfigurationError("No backends configured", config_key="backend_models")

        failures: List[QuotaExhausted] = []
        for index, client in enumerate(backends):
            if index > 0:
                logger.warning(f"Backend {backends[index - 1].name} out of quota, failing over to {client.name}")
                cancel_token.sleep_or_raise(self.failover_pause)

            result = client.transform(data, media_type, prompt, cancel_token, on_retry)
            if isinstance(result, QuotaExhausted):
                failures.append(result)
                continue

            if failures:
                logger.info(f"Backend {client.name} succeeded after {len(failures)} failover(s)")
            return result

        error = QuotaError(failures)
        logger.error(error.message)
        raise error
