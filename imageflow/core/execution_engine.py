"""Execution Engine: background management of workflow runs."""

import threading
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..models.core import (
    ExecutionRecord, ExecutionStatusEnum, InputImage, OutputImage, RetryEvent,
    RunEvent, RunEventType, RunResult, RunStatus, StepDefinition, WorkflowGraph
)
from .cancellation import CancellationToken
from .exceptions import ExecutionEngineError, WorkflowEngineError
from .graph_manager import GraphManager
from .logging import get_logger, logging_context
from .state_manager import StateManager
from .workflow_runner import BackendsFactory, WorkflowRunner

logger = get_logger(__name__)


class RunContext:
    """In-memory bookkeeping for one submitted run.

    ``images`` is emptied once the run is handed to a runner; ``outputs``
    grows as each image finishes.
    """

    def __init__(self, run_id: str, images: Sequence[InputImage], steps: Sequence[StepDefinition]):
        self.run_id = run_id
        self.images = list(images)
        self.image_count = len(self.images)
        self.outputs: List[OutputImage] = []
        self.steps = list(steps)
        self.cancel_token = CancellationToken()
        self.status = ExecutionStatusEnum.PENDING
        self.completed_outputs = 0
        self.started_at = datetime.utcnow()
        self.completed_at: Optional[datetime] = None
        self.result: Optional[RunResult] = None
        self.error_message: Optional[str] = None
        self.future: Optional[Future] = None

    def to_status(self) -> RunStatus:
        return RunStatus(
            run_id=self.run_id,
            status=self.status,
            image_count=self.image_count,
            step_count=len(self.steps),
            completed_outputs=self.completed_outputs,
            error_message=self.error_message,
            started_at=self.started_at,
            completed_at=self.completed_at
        )


class ExecutionEngine:
    """Runs workflows on a thread pool and tracks them until they finish.

    Each run gets its own WorkflowRunner and CancellationToken; runs share
    only the StateManager.
    """

    def __init__(
        self,
        config,
        state_manager: StateManager,
        graph_manager: Optional[GraphManager] = None,
        websocket_manager=None,
        backends_factory: Optional[BackendsFactory] = None
    ):
        """Initialize the execution engine.

        Args:
            config: AppConfig passed to every runner
            state_manager: Persistence for runs and execution records
            graph_manager: Scheduler; built from ``config.allow_branching`` when omitted
            websocket_manager: Optional WebSocket manager for real-time monitoring
            backends_factory: Overrides how backend clients are built for each run
        """
        self.config = config
        self.state_manager = state_manager
        self.graph_manager = graph_manager or GraphManager(allow_branching=config.allow_branching)
        self.websocket_manager = websocket_manager
        self.backends_factory = backends_factory

        self._runs: Dict[str, RunContext] = {}
        # Finished run ids, oldest first
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self.max_retained_runs = config.max_retained_runs
        self._runs_lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_runs,
            thread_name_prefix="imageflow-run"
        )

        logger.info(f"ExecutionEngine initialized with max_concurrent_runs={config.max_concurrent_runs}")

    def submit_run(self, graph: WorkflowGraph, images: Sequence[InputImage]) -> str:
        """
        Validate a workflow and schedule it for background execution.

        Args:
            graph: Workflow graph to execute
            images: Input images

        Returns:
            Unique run ID for tracking execution

        Raises:
            GraphValidationError: If the graph is not a valid pipeline
            ExecutionEngineError: If there are no images or no steps
            StorageError: If the run cannot be recorded
        """
        if not images:
            raise ExecutionEngineError("Please upload at least one image")

        ordered_steps = self.graph_manager.execution_order(graph)
        if not ordered_steps:
            raise ExecutionEngineError("Please add at least one step to the workflow")

        run_id = str(uuid.uuid4())
        self.state_manager.create_run(run_id, [step.name for step in ordered_steps], len(images))

        context = RunContext(run_id, images, ordered_steps)
        with self._runs_lock:
            self._runs[run_id] = context
            context.future = self._executor.submit(self._execute_run, context)

        logger.info(f"Submitted run {run_id}: {len(images)} image(s), "
                    f"{' -> '.join(step.name for step in ordered_steps)}")
        return run_id

    def _execute_run(self, context: RunContext) -> RunResult:
        """Execute one run (called on a worker thread)."""
        with logging_context(run_id=context.run_id):
            return self._run_in_context(context)

    def _run_in_context(self, context: RunContext) -> RunResult:
        run_id = context.run_id

        with self._runs_lock:
            images, context.images = context.images, []

        if context.cancel_token.is_cancelled:
            result = RunResult(run_id=run_id, status=ExecutionStatusEnum.CANCELLED,
                               error_message=context.cancel_token.reason)
            self._finalize_run(context, result)
            return result

        context.status = ExecutionStatusEnum.RUNNING
        try:
            self.state_manager.update_run(run_id, ExecutionStatusEnum.RUNNING)
        except WorkflowEngineError as e:
            logger.error(f"Failed to mark run {run_id} as running: {e.message}")

        runner = WorkflowRunner(self.config, backends_factory=self.backends_factory)

        try:
            result = runner.execute(
                images,
                context.steps,
                cancel_token=context.cancel_token,
                on_progress=lambda event: self._on_progress(context, event),
                on_retry=lambda event: self._on_retry(context, event),
                run_id=run_id
            )
        except Exception as e:
            # Configuration or usage errors raised before the first step
            error_message = e.message if isinstance(e, WorkflowEngineError) else str(e)
            logger.error(f"Run {run_id} could not start: {error_message}")
            result = RunResult(run_id=run_id, status=ExecutionStatusEnum.FAILED,
                               error_message=error_message, error=e)
            if self.websocket_manager:
                self.websocket_manager.queue_run_event(RunEvent(
                    event_type=RunEventType.RUN_FAILED, run_id=run_id, message=error_message
                ))

        self._finalize_run(context, result)
        return result

    def _finalize_run(self, context: RunContext, result: RunResult) -> None:
        """Persist the outcome of a run and release its slot."""
        with self._runs_lock:
            context.result = result
            context.status = result.status
            context.outputs = list(result.outputs)
            context.completed_outputs = len(result.outputs)
            context.error_message = result.error_message
            context.completed_at = datetime.utcnow()

        try:
            self.state_manager.append_records(result.records)
            self.state_manager.update_run(
                context.run_id,
                result.status,
                completed_outputs=len(result.outputs),
                error_message=result.error_message,
                failed_step=result.failed_step,
                failed_image=result.failed_image
            )
        except WorkflowEngineError as e:
            logger.error(f"Failed to persist outcome of run {context.run_id}: {e.message}")

        self._retain(context.run_id)
        logger.info(f"Run {context.run_id} finished with status {result.status.value}")

    def _retain(self, run_id: str) -> None:
        """Keep a finished run in memory, dropping the oldest beyond the limit."""
        with self._runs_lock:
            self._finished[run_id] = None
            while len(self._finished) > self.max_retained_runs:
                evicted, _ = self._finished.popitem(last=False)
                self._runs.pop(evicted, None)
                logger.debug(f"Released outputs of run {evicted}")

    def _on_progress(self, context: RunContext, event: RunEvent) -> None:
        if event.event_type == RunEventType.OUTPUT_READY:
            with self._runs_lock:
                if event.output is not None:
                    context.outputs.append(event.output)
                context.completed_outputs += 1
        if self.websocket_manager:
            self.websocket_manager.queue_run_event(event)

    def _on_retry(self, context: RunContext, event: RetryEvent) -> None:
        logger.info(f"Run {context.run_id}: retrying {event.backend} in {event.delay:.1f}s "
                    f"(attempt {event.attempt})")
        if self.websocket_manager:
            self.websocket_manager.queue_retry_event(context.run_id, event)

    def _get_context(self, run_id: str) -> Optional[RunContext]:
        with self._runs_lock:
            return self._runs.get(run_id)

    def get_run_status(self, run_id: str) -> RunStatus:
        """
        Get the current status of a run.

        Raises:
            ExecutionEngineError: If the run is unknown
        """
        context = self._get_context(run_id)
        if context is not None:
            with self._runs_lock:
                return context.to_status()

        status = self.state_manager.get_run(run_id)
        if status is None:
            raise ExecutionEngineError(f"Run {run_id} not found", run_id=run_id)
        return status

    def get_run_outputs(self, run_id: str) -> List[OutputImage]:
        """
        Outputs produced by a run so far, in completion order.

        While the run executes this holds the images finished up to now.
        Finished runs are held until ``max_retained_runs`` newer ones finish.

        Raises:
            ExecutionEngineError: If the run is not known to this engine
        """
        context = self._get_context(run_id)
        if context is None:
            raise ExecutionEngineError(f"Run {run_id} not found or its outputs are no longer held",
                                       run_id=run_id)
        with self._runs_lock:
            return list(context.outputs)

    def get_run_records(self, run_id: str) -> List[ExecutionRecord]:
        """
        Execution records of a run.

        Raises:
            ExecutionEngineError: If the run is unknown
        """
        self.get_run_status(run_id)
        return self.state_manager.list_records(run_id=run_id)

    def cancel_run(self, run_id: str) -> bool:
        """
        Signal a run to stop at its next suspension point.

        Returns:
            True if the run was pending or running, False otherwise
        """
        context = self._get_context(run_id)
        if context is None or context.status.is_terminal:
            logger.warning(f"Attempted to cancel non-active run: {run_id}")
            return False

        context.cancel_token.cancel()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunResult:
        """
        Block until a run finishes.

        Raises:
            ExecutionEngineError: If the run is unknown or does not finish in time
        """
        context = self._get_context(run_id)
        if context is None or context.future is None:
            raise ExecutionEngineError(f"Run {run_id} not found", run_id=run_id)
        try:
            return context.future.result(timeout=timeout)
        except FutureTimeoutError:
            raise ExecutionEngineError(f"Run {run_id} did not finish within {timeout}s", run_id=run_id)

    def get_active_runs(self) -> List[str]:
        """IDs of runs that are pending or running."""
        with self._runs_lock:
            return [run_id for run_id, context in self._runs.items() if not context.status.is_terminal]

    def is_run_active(self, run_id: str) -> bool:
        return run_id in self.get_active_runs()

    def shutdown(self) -> None:
        """Cancel every active run and wait for the workers to stop."""
        for run_id in self.get_active_runs():
            self.cancel_run(run_id)
        self._executor.shutdown(wait=True)
        logger.info("ExecutionEngine shutdown completed")
