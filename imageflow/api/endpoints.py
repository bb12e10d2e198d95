"""FastAPI REST endpoints for the image workflow engine."""

from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, status, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
import json

from ..core.graph_manager import GraphManager
from ..core.execution_engine import ExecutionEngine
from ..core.state_manager import StateManager
from ..core.middleware import status_code_for_error
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..models.core import (
    ExecutionRecord,
    InputImage,
    RecordSummary,
    RunStatus,
    StepDefinition,
    ValidationResult,
    WorkflowGraph,
)
from ..models.presets import list_prebuilt_steps
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the app factory)
_graph_manager: Optional[GraphManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_state_manager: Optional[StateManager] = None
_websocket_manager = None


def init_dependencies(
    graph_manager: GraphManager,
    execution_engine: ExecutionEngine,
    state_manager: StateManager,
    websocket_manager=None
):
    """Initialize the global dependencies."""
    global _graph_manager, _execution_engine, _state_manager, _websocket_manager
    _graph_manager = graph_manager
    _execution_engine = execution_engine
    _state_manager = state_manager
    _websocket_manager = websocket_manager


def get_graph_manager() -> GraphManager:
    """Dependency to get graph manager."""
    if _graph_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Graph manager not initialized"
        )
    return _graph_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_state_manager() -> StateManager:
    """Dependency to get state manager."""
    if _state_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="State manager not initialized"
        )
    return _state_manager


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Wrap an engine error in an HTTPException with the standard error body."""
    return HTTPException(
        status_code=status_code_for_error(error),
        detail=create_error_response(error)
    )


# Request/Response models
class WorkflowRequest(BaseModel):
    """Request model carrying a workflow graph."""
    graph: WorkflowGraph = Field(..., description="Workflow graph as built by the editor")


class ExecutionOrderResponse(BaseModel):
    """Response model for execution ordering."""
    steps: List[StepDefinition] = Field(..., description="Steps in execution order")
    warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class ImagePayload(BaseModel):
    """An input image sent over HTTP."""
    name: str = Field(..., description="File name")
    data: str = Field(..., description="Base64 payload or data URL")
    media_type: Optional[str] = Field(None, description="Media type; required unless data is a data URL")

    def to_input_image(self) -> InputImage:
        if self.data.startswith("data:"):
            return InputImage.from_data_url(self.name, self.data)
        if not self.media_type:
            raise ValueError(f"media_type is required for image '{self.name}'")
        return InputImage.from_base64(self.name, self.data, self.media_type)


class StartRunRequest(BaseModel):
    """Request model for starting a run."""
    graph: WorkflowGraph = Field(..., description="Workflow graph to execute")
    images: List[ImagePayload] = Field(default_factory=list, description="Input images")


class StartRunResponse(BaseModel):
    """Response model for run submission."""
    run_id: str = Field(..., description="Unique identifier for the run")
    message: str = Field(..., description="Success message")
    status: str = Field(..., description="Initial run status")


class OutputPayload(BaseModel):
    """A final output image rendered for HTTP clients."""
    id: str
    original_image_id: str
    original_file_name: str
    media_type: str
    data_url: str


class CancelRunResponse(BaseModel):
    """Response model for cancellation."""
    run_id: str
    cancelled: bool


# Endpoints
#
# Run store calls block (storage retries sleep) and go through run_in_threadpool.

@router.post(
    "/workflow/validate",
    response_model=ValidationResult,
    summary="Validate a workflow graph",
    description="Check that a graph forms a single valid pipeline without executing it"
)
async def validate_workflow(
    request: WorkflowRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> ValidationResult:
    """
    Validate a workflow graph.

    Returns:
        Validation result with every error and warning found
    """
    result = graph_manager.validate_graph(request.graph)
    logger.debug(f"Validated workflow: valid={result.is_valid}")
    return result


@router.post(
    "/workflow/order",
    response_model=ExecutionOrderResponse,
    summary="Compute the execution order of a workflow"
)
async def order_workflow(
    request: WorkflowRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> ExecutionOrderResponse:
    """
    Compute the execution order of a workflow graph.

    Raises:
        HTTPException: 400 if the graph is not a valid pipeline
    """
    try:
        ordered = graph_manager.execution_order(request.graph)
    except WorkflowEngineError as e:
        logger.warning(f"Workflow ordering rejected: {e.message}")
        raise _http_error(e)

    return ExecutionOrderResponse(
        steps=ordered,
        warnings=graph_manager.validate_graph(request.graph).warnings
    )


@router.get(
    "/steps/presets",
    response_model=List[StepDefinition],
    summary="List pre-built steps"
)
async def list_step_presets() -> List[StepDefinition]:
    """Pre-built steps, each with a fresh id."""
    return list_prebuilt_steps()


@router.post(
    "/runs",
    response_model=StartRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow run",
    description="Validate the graph and process the images in the background"
)
async def start_run(
    request: StartRunRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StartRunResponse:
    """
    Start a workflow run.

    Raises:
        HTTPException: 400 for an invalid graph, undecodable or missing images
    """
    try:
        images = [payload.to_input_image() for payload in request.images]
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "InvalidImage",
                "message": str(e),
                "details": {}
            }
        )

    try:
        run_id = await run_in_threadpool(execution_engine.submit_run, request.graph, images)
    except WorkflowEngineError as e:
        logger.warning(f"Run rejected: {e.message}")
        raise _http_error(e)

    return StartRunResponse(
        run_id=run_id,
        message="Workflow run started",
        status="pending"
    )


@router.get(
    "/runs/{run_id}",
    response_model=RunStatus,
    summary="Get run status"
)
async def get_run_status(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> RunStatus:
    """
    Get the status of a run.

    Raises:
        HTTPException: 404 if the run is unknown
    """
    try:
        return await run_in_threadpool(execution_engine.get_run_status, run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/runs/{run_id}/outputs",
    response_model=List[OutputPayload],
    summary="Get run outputs as data URLs"
)
async def get_run_outputs(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[OutputPayload]:
    try:
        outputs = execution_engine.get_run_outputs(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return [
        OutputPayload(
            id=output.id,
            original_image_id=output.original_image_id,
            original_file_name=output.original_file_name,
            media_type=output.media_type,
            data_url=output.to_data_url()
        )
        for output in outputs
    ]


@router.get(
    "/runs/{run_id}/records",
    response_model=List[ExecutionRecord],
    summary="Get the execution records of a run"
)
async def get_run_records(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionRecord]:
    try:
        return await run_in_threadpool(execution_engine.get_run_records, run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=CancelRunResponse,
    summary="Cancel a run"
)
async def cancel_run(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> CancelRunResponse:
    """Request cancellation. ``cancelled`` is False if the run is unknown or already finished."""
    return CancelRunResponse(run_id=run_id, cancelled=execution_engine.cancel_run(run_id))


@router.get(
    "/records",
    response_model=List[ExecutionRecord],
    summary="List all execution records"
)
async def list_records(
    limit: Optional[int] = None,
    state_manager: StateManager = Depends(get_state_manager)
) -> List[ExecutionRecord]:
    try:
        return await run_in_threadpool(state_manager.list_records, limit=limit)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/records/summary",
    response_model=RecordSummary,
    summary="Dashboard summary of execution records"
)
async def get_records_summary(
    state_manager: StateManager = Depends(get_state_manager)
) -> RecordSummary:
    try:
        return await run_in_threadpool(state_manager.summarize_records)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete(
    "/records",
    summary="Clear the execution record log"
)
async def clear_records(
    state_manager: StateManager = Depends(get_state_manager)
) -> Dict[str, Any]:
    try:
        deleted = await run_in_threadpool(state_manager.clear_records)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"deleted": deleted, "message": f"Cleared {deleted} execution record(s)"}


@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    WebSocket endpoint for real-time run monitoring.

    Client messages:
    {
        "action": "subscribe" | "unsubscribe" | "ping" | "get_status",
        "run_id": "run id, or * for every run"
    }

    Server messages:
    {
        "event_type": "step_started" | "step_completed" | "output_ready" | "retry_scheduled" |
                      "run_completed" | "run_cancelled" | "run_failed" | ...,
        "run_id": "workflow_run_id",
        "timestamp": "iso_timestamp",
        "data": {...}
    }
    """
    if not _websocket_manager:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = None
    try:
        connection_id = await _websocket_manager.connect(websocket)
        if connection_id is None:
            return
        logger.info(f"WebSocket client connected: {connection_id}")

        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)

                action = message.get("action")
                run_id = message.get("run_id")

                if action == "subscribe" and run_id:
                    success = await _websocket_manager.subscribe_to_run(connection_id, run_id)
                    if not success:
                        await _websocket_manager.send_to_connection(connection_id, {
                            "event_type": "error",
                            "message": f"Failed to subscribe to run {run_id}",
                            "timestamp": datetime.utcnow().isoformat()
                        })

                elif action == "unsubscribe" and run_id:
                    success = await _websocket_manager.unsubscribe_from_run(connection_id, run_id)
                    if success:
                        await _websocket_manager.send_to_connection(connection_id, {
                            "event_type": "unsubscribed",
                            "run_id": run_id,
                            "message": f"Unsubscribed from run {run_id}",
                            "timestamp": datetime.utcnow().isoformat()
                        })

                elif action == "ping":
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "pong",
                        "timestamp": datetime.utcnow().isoformat()
                    })

                elif action == "get_status":
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "status_info",
                        "data": _websocket_manager.get_connection_info(),
                        "timestamp": datetime.utcnow().isoformat()
                    })

                else:
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "error",
                        "message": f"Unknown action: {action}",
                        "timestamp": datetime.utcnow().isoformat()
                    })

            except json.JSONDecodeError:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": "Invalid JSON message format",
                    "timestamp": datetime.utcnow().isoformat()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {str(e)}")
    finally:
        if connection_id:
            await _websocket_manager.disconnect(connection_id)


@router.get(
    "/ws/connections",
    summary="Get WebSocket connection information"
)
async def get_websocket_connections() -> Dict[str, Any]:
    if not _websocket_manager:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="WebSocket monitoring not available"
        )
    return {
        "websocket_monitoring": "active",
        "connection_info": _websocket_manager.get_connection_info()
    }
