"""Core Pydantic models for the image workflow engine."""

import base64
import binascii
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


_DATA_URL_PATTERN = re.compile(r"^data:(.*?);base64,(.*)$", re.DOTALL)


def _new_id() -> str:
    return str(uuid.uuid4())


class StepKind(str, Enum):
    """Provenance of a step. Does not affect execution."""
    PREBUILT = "prebuilt"
    CUSTOM = "custom"


class ExecutionStatusEnum(str, Enum):
    """Lifecycle of a workflow run."""
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.FAILED, ExecutionStatusEnum.CANCELLED)


class RecordStatus(str, Enum):
    """Outcome of one (image, step) attempt."""
    SUCCESS = "success"
    FAILURE = "failure"


class RunEventType(str, Enum):
    """Events emitted by the workflow runner while a run progresses."""
    RUN_STARTED = "run_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    OUTPUT_READY = "output_ready"
    RUN_COMPLETED = "run_completed"
    RUN_CANCELLED = "run_cancelled"
    RUN_FAILED = "run_failed"


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class StepDefinition(BaseModel):
    """One image-transformation step of a workflow."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id, description="Unique identifier for the step")
    name: str = Field(..., description="Display name")
    prompt: str = Field(..., description="Instruction sent to the image backend")
    kind: StepKind = Field(StepKind.CUSTOM, description="Whether the step came from a preset")

    @field_validator('id', 'name')
    @classmethod
    def validate_not_empty(cls, value):
        """Ensure identifiers and names are not blank."""
        if not value or not value.strip():
            raise ValueError("Step id and name cannot be empty")
        return value.strip()

    @field_validator('prompt')
    @classmethod
    def validate_prompt(cls, prompt):
        """Ensure the prompt carries an instruction."""
        if not prompt or not prompt.strip():
            raise ValueError("Step prompt cannot be empty")
        return prompt.strip()


class EdgeDefinition(BaseModel):
    """Directed connection between two steps."""
    model_config = ConfigDict(frozen=True)

    from_step: str = Field(..., description="Source step ID")
    to_step: str = Field(..., description="Target step ID")

    @field_validator('from_step', 'to_step')
    @classmethod
    def validate_step_ids(cls, step_id):
        """Ensure step IDs are valid."""
        if not step_id or not step_id.strip():
            raise ValueError("Step ID cannot be empty")
        return step_id.strip()

    @model_validator(mode='after')
    def validate_edge(self):
        """Reject self-loops."""
        if self.from_step == self.to_step:
            raise ValueError(f"Self-referencing edge not allowed: {self.from_step}")
        return self


class WorkflowGraph(BaseModel):
    """Steps and edges as built by the editor.

    Step order is significant: it is the tie-break used by the scheduler.
    """
    steps: List[StepDefinition] = Field(default_factory=list, description="Steps in insertion order")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Connections between steps")

    @field_validator('steps')
    @classmethod
    def validate_unique_step_ids(cls, steps):
        """Ensure all step IDs are unique."""
        step_ids = [step.id for step in steps]
        if len(step_ids) != len(set(step_ids)):
            raise ValueError("All step IDs must be unique")
        return steps

    @model_validator(mode='after')
    def validate_edge_references(self):
        """Edges must point at known steps and appear only once."""
        step_ids = {step.id for step in self.steps}
        seen = set()
        for edge in self.edges:
            if edge.from_step not in step_ids:
                raise ValueError(f"Edge references non-existent source step: {edge.from_step}")
            if edge.to_step not in step_ids:
                raise ValueError(f"Edge references non-existent target step: {edge.to_step}")
            key = (edge.from_step, edge.to_step)
            if key in seen:
                raise ValueError(f"Duplicate edge: {edge.from_step} -> {edge.to_step}")
            seen.add(key)
        return self

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class InputImage(BaseModel):
    """An uploaded image: raw encoded bytes plus declared media type."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id, description="Image identity")
    name: str = Field(..., description="Display (file) name")
    data: bytes = Field(..., repr=False, description="Encoded image bytes")
    media_type: str = Field(..., description="Declared media type, e.g. image/png")

    @field_validator('data')
    @classmethod
    def validate_data(cls, data):
        if not data:
            raise ValueError("Image data cannot be empty")
        return data

    @classmethod
    def from_base64(cls, name: str, data: str, media_type: str, image_id: Optional[str] = None) -> 'InputImage':
        """Build an image from a base64 payload."""
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 image data for '{name}': {e}")
        kwargs: Dict[str, Any] = {"name": name, "data": raw, "media_type": media_type}
        if image_id:
            kwargs["id"] = image_id
        return cls(**kwargs)

    @classmethod
    def from_data_url(cls, name: str, data_url: str, image_id: Optional[str] = None) -> 'InputImage':
        """Build an image from a ``data:<type>;base64,<payload>`` URL."""
        match = _DATA_URL_PATTERN.match(data_url or "")
        if not match:
            raise ValueError("Invalid data URL format")
        return cls.from_base64(name, match.group(2), match.group(1), image_id=image_id)


class TransformedImage(BaseModel):
    """Image bytes returned by a backend."""
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., repr=False)
    media_type: str


class OutputImage(BaseModel):
    """Final result of a workflow for one input image."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    original_image_id: str
    original_file_name: str
    data: bytes = Field(..., repr=False)
    media_type: str

    @field_serializer("data", when_used="json")
    def serialize_data(self, data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"

    @property
    def download_name(self) -> str:
        """File name for saving the output, e.g. ``edited-my_photo.png``."""
        return "edited-" + re.sub(r"[^a-z0-9_.-]", "_", self.original_file_name, flags=re.IGNORECASE)


class ExecutionRecord(BaseModel):
    """Immutable log entry for one (image, step) attempt."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    run_id: Optional[str] = None
    image_id: str
    image_name: str
    step_id: str
    step_name: str
    status: RecordStatus
    cost: float = 0.0
    credits: int = 0


class RunEvent(BaseModel):
    """Progress notification for the presentation layer."""
    event_type: RunEventType
    run_id: Optional[str] = None
    image_index: Optional[int] = None
    image_total: Optional[int] = None
    step_index: Optional[int] = None
    step_total: Optional[int] = None
    image_id: Optional[str] = None
    image_name: Optional[str] = None
    step_name: Optional[str] = None
    message: str = ""
    output: Optional[OutputImage] = Field(None, description="The finished image, set on output_ready")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class RetryEvent(BaseModel):
    """Emitted by a backend client before it sleeps and retries."""
    backend: str
    attempt: int
    delay: float = Field(..., description="Seconds until the next attempt")
    reason: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class RunResult(BaseModel):
    """Outcome of one workflow run."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: Optional[str] = None
    status: ExecutionStatusEnum
    outputs: List[OutputImage] = Field(default_factory=list)
    records: List[ExecutionRecord] = Field(default_factory=list)
    error_message: Optional[str] = None
    error: Optional[Exception] = Field(None, exclude=True)
    failed_step: Optional[str] = None
    failed_image: Optional[str] = None

    def raise_for_status(self) -> None:
        """Re-raise the failure, if any. Cancellation is not a failure."""
        if self.status == ExecutionStatusEnum.FAILED and self.error is not None:
            raise self.error


class RunStatus(BaseModel):
    """Status of a run as tracked by the execution engine."""
    run_id: str
    status: ExecutionStatusEnum
    image_count: int
    step_count: int
    completed_outputs: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class DailyOperations(BaseModel):
    date: str
    operations: int


class StepUsage(BaseModel):
    step_name: str
    operations: int


class RecordSummary(BaseModel):
    """Aggregated view of the execution record log."""
    total_operations: int = 0
    failed_operations: int = 0
    total_cost: float = 0.0
    total_credits: int = 0
    unique_images: int = 0
    operations_by_day: List[DailyOperations] = Field(default_factory=list)
    top_steps: List[StepUsage] = Field(default_factory=list)
