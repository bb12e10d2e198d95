"""Data models for the image workflow engine."""

from .core import (
    StepKind,
    ExecutionStatusEnum,
    RecordStatus,
    RunEventType,
    ValidationResult,
    StepDefinition,
    EdgeDefinition,
    WorkflowGraph,
    InputImage,
    TransformedImage,
    OutputImage,
    ExecutionRecord,
    RunEvent,
    RetryEvent,
    RunResult,
    RunStatus,
    RecordSummary,
)

__all__ = [
    "StepKind",
    "ExecutionStatusEnum",
    "RecordStatus",
    "RunEventType",
    "ValidationResult",
    "StepDefinition",
    "EdgeDefinition",
    "WorkflowGraph",
    "InputImage",
    "TransformedImage",
    "OutputImage",
    "ExecutionRecord",
    "RunEvent",
    "RetryEvent",
    "RunResult",
    "RunStatus",
    "RecordSummary",
]
