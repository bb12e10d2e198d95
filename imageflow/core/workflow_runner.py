"""Workflow Runner: drives an ordered step list over a batch of images."""

import threading
import uuid
from typing import Callable, List, Optional, Sequence

from ..backends.client import BackendClient, RetryCallback
from ..models.core import (
    ExecutionRecord, ExecutionStatusEnum, InputImage, OutputImage, RecordStatus,
    RunEvent, RunEventType, RunResult, StepDefinition, TransformedImage
)
from .cancellation import CancellationToken
from .exceptions import (
    ExecutionEngineError, QuotaError, StepExecutionError, WorkflowCancelledError, WorkflowEngineError
)
from .failover import FailoverExecutor
from .logging import get_logger, logging_context

logger = get_logger(__name__)


ProgressCallback = Callable[[RunEvent], None]
BackendsFactory = Callable[[], Sequence[BackendClient]]


class WorkflowRunner:
    """Runs every image through every step, strictly sequentially.

    State machine: ``idle -> running -> completed | cancelled | failed``.
    The first failing (image, step) halts the whole batch; cancellation is a
    normal outcome and returns the outputs finished so far.
    """

    def __init__(self, config, backends_factory: Optional[BackendsFactory] = None,
                 failover: Optional[FailoverExecutor] = None):
        """Initialize the runner.

        Args:
            config: AppConfig supplying cost, credits and failover settings
            backends_factory: Builds the ordered backend clients for a run.
                Defaults to the built-in provider registry.
            failover: Failover executor; built from config when omitted
        """
        self.config = config
        self.backends_factory = backends_factory or self._default_backends_factory
        self.failover = failover or FailoverExecutor(failover_pause=config.failover_pause)
        self._status = ExecutionStatusEnum.IDLE
        self._lock = threading.Lock()

    @property
    def status(self) -> ExecutionStatusEnum:
        return self._status

    def _default_backends_factory(self) -> Sequence[BackendClient]:
        from ..backends.registry import create_default_registry
        return create_default_registry().build_clients(self.config)

    def execute(
        self,
        images: Sequence[InputImage],
        ordered_steps: Sequence[StepDefinition],
        backends_factory: Optional[BackendsFactory] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[RetryCallback] = None,
        run_id: Optional[str] = None
    ) -> RunResult:
        """
        Execute a workflow over a batch of images.

        Args:
            images: Input images, processed in order
            ordered_steps: Steps in execution order (see GraphManager.execution_order)
            backends_factory: Overrides the runner's backend factory for this run
            cancel_token: Token the caller may signal to stop the run
            on_progress: Receives RunEvents
            on_retry: Receives RetryEvents from the backend clients
            run_id: Identifier stamped on records and events

        Returns:
            RunResult: Outputs, records and final status. Failures are reported
            in the result, not raised.

        Raises:
            ExecutionEngineError: If there are no images or no steps, or a run
                is already in progress on this runner
            ConfigurationError: If no backends can be built
        """
        if not images:
            raise ExecutionEngineError("Please upload at least one image", run_id=run_id)
        if not ordered_steps:
            raise ExecutionEngineError("Please add at least one step to the workflow", run_id=run_id)

        with self._lock:
            if self._status == ExecutionStatusEnum.RUNNING:
                raise ExecutionEngineError("A workflow is already running", run_id=run_id)
            self._status = ExecutionStatusEnum.RUNNING

        run_id = run_id or str(uuid.uuid4())
        cancel_token = cancel_token or CancellationToken()

        with logging_context(run_id=run_id):
            try:
                backends = list((backends_factory or self.backends_factory)())
            except Exception:
                self._status = ExecutionStatusEnum.IDLE
                raise

            return self._run_batch(run_id, images, ordered_steps, backends, cancel_token, on_progress, on_retry)

    def _run_batch(
        self,
        run_id: str,
        images: Sequence[InputImage],
        ordered_steps: Sequence[StepDefinition],
        backends: List[BackendClient],
        cancel_token: CancellationToken,
        on_progress: Optional[ProgressCallback],
        on_retry: Optional[RetryCallback]
    ) -> RunResult:
        result = RunResult(run_id=run_id, status=ExecutionStatusEnum.RUNNING)
        safe_on_retry = (lambda event: self._emit(on_retry, event)) if on_retry else None

        logger.info(f"Run {run_id}: {len(images)} image(s) x {len(ordered_steps)} step(s) "
                    f"on {', '.join(b.name for b in backends) or 'no backends'}")
        self._emit(on_progress, RunEvent(
            event_type=RunEventType.RUN_STARTED, run_id=run_id,
            image_total=len(images), step_total=len(ordered_steps),
            message=f"Running {len(ordered_steps)} step(s) on {len(images)} image(s)"
        ))

        try:
            # Images run strictly one after another, in upload order
            for image_index, image in enumerate(images):
                output = self._process_image(
                    run_id, image, image_index, len(images), ordered_steps,
                    backends, cancel_token, on_progress, safe_on_retry, result
                )
                result.outputs.append(output)
                self._emit(on_progress, RunEvent(
                    event_type=RunEventType.OUTPUT_READY, run_id=run_id,
                    image_index=image_index, image_total=len(images),
                    image_id=image.id, image_name=image.name,
                    message=f"Finished processing {image.name}",
                    output=output
                ))

            result.status = ExecutionStatusEnum.COMPLETED
            logger.info(f"Run {run_id} completed with {len(result.outputs)} output(s)")
            self._emit(on_progress, RunEvent(
                event_type=RunEventType.RUN_COMPLETED, run_id=run_id,
                image_total=len(images), step_total=len(ordered_steps),
                message="Workflow completed successfully."
            ))

        except WorkflowCancelledError as e:
            result.status = ExecutionStatusEnum.CANCELLED
            result.error_message = e.message
            logger.info(f"Run {run_id} cancelled after {len(result.outputs)} output(s)")
            self._emit(on_progress, RunEvent(
                event_type=RunEventType.RUN_CANCELLED, run_id=run_id, message=e.message
            ))

        except StepExecutionError as e:
            result.status = ExecutionStatusEnum.FAILED
            result.error = e
            result.error_message = e.message
            result.failed_step = e.step_name
            result.failed_image = e.image_name
            logger.error(f"Run {run_id} failed: {e.message}")
            self._emit(on_progress, RunEvent(
                event_type=RunEventType.RUN_FAILED, run_id=run_id,
                step_name=e.step_name, image_name=e.image_name, message=e.message
            ))

        finally:
            # Unexpected errors propagate, but the runner must not stay RUNNING
            if result.status == ExecutionStatusEnum.RUNNING:
                result.status = ExecutionStatusEnum.FAILED
            self._status = result.status

        return result

    def _process_image(
        self,
        run_id: str,
        image: InputImage,
        image_index: int,
        image_total: int,
        steps: Sequence[StepDefinition],
        backends: List[BackendClient],
        cancel_token: CancellationToken,
        on_progress: Optional[ProgressCallback],
        on_retry: Optional[RetryCallback],
        result: RunResult
    ) -> OutputImage:
        """Thread one image through all steps. Appends a record per attempted step."""
        current = TransformedImage(data=image.data, media_type=image.media_type)

        for step_index, step in enumerate(steps):
            # Checked between steps; backoff sleeps check on their own
            cancel_token.raise_if_cancelled()

            self._emit(on_progress, RunEvent(
                event_type=RunEventType.STEP_STARTED, run_id=run_id,
                image_index=image_index, image_total=image_total,
                step_index=step_index, step_total=len(steps),
                image_id=image.id, image_name=image.name, step_name=step.name,
                message=f"Processing {image.name} ({image_index + 1}/{image_total}): "
                        f"{step.name} ({step_index + 1}/{len(steps)})"
            ))

            try:
                current = self.failover.run(
                    current.data, current.media_type, step.prompt,
                    backends, cancel_token, on_retry
                )
            except WorkflowCancelledError:
                # not a step failure, so no record
                raise
            except Exception as e:
                result.records.append(self._record(run_id, image, step, RecordStatus.FAILURE))
                raise StepExecutionError(
                    self._describe_failure(step, image, e),
                    step_name=step.name,
                    image_name=image.name,
                    run_id=run_id,
                    cause=e
                ) from e

            result.records.append(self._record(run_id, image, step, RecordStatus.SUCCESS))
            self._emit(on_progress, RunEvent(
                event_type=RunEventType.STEP_COMPLETED, run_id=run_id,
                image_index=image_index, image_total=image_total,
                step_index=step_index, step_total=len(steps),
                image_id=image.id, image_name=image.name, step_name=step.name,
                message=f"{step.name} done for {image.name}"
            ))

        return OutputImage(
            original_image_id=image.id,
            original_file_name=image.name,
            data=current.data,
            media_type=current.media_type
        )

    def _record(self, run_id: str, image: InputImage, step: StepDefinition, status: RecordStatus) -> ExecutionRecord:
        success = status == RecordStatus.SUCCESS
        return ExecutionRecord(
            run_id=run_id,
            image_id=image.id,
            image_name=image.name,
            step_id=step.id,
            step_name=step.name,
            status=status,
            cost=self.config.cost_per_step if success else 0.0,
            credits=self.config.credits_per_step if success else 0
        )

    def _describe_failure(self, step: StepDefinition, image: InputImage, error: Exception) -> str:
        detail = error.message if isinstance(error, WorkflowEngineError) else str(error)
        if isinstance(error, QuotaError):
            return f'Quota exceeded while processing "{step.name}" for "{image.name}". {detail}'
        return f'Error on "{step.name}" for "{image.name}": {detail}'

    def _emit(self, callback: Optional[Callable], event) -> None:
        """Deliver an event. Observer failures are logged and do not affect the run."""
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.error(f"Callback failed for {type(event).__name__}: {e}")
