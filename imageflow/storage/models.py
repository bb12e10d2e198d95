"""SQLAlchemy database models for the image workflow engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Float, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowRunModel(Base):
    """Database model for workflow execution runs."""
    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)
    status = Column(String, nullable=False)  # pending, running, completed, failed, cancelled
    step_names = Column(JSON)  # Execution order as display names
    image_count = Column(Integer, nullable=False, default=0)
    step_count = Column(Integer, nullable=False, default=0)
    completed_outputs = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    failed_step = Column(String)
    failed_image = Column(String)
    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime)

    records = relationship("ExecutionRecordModel", back_populates="run")


class ExecutionRecordModel(Base):
    """Database model for per (image, step) execution records."""
    __tablename__ = "execution_records"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    image_id = Column(String, nullable=False)
    image_name = Column(String, nullable=False)
    step_id = Column(String, nullable=False)
    step_name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # success, failure
    cost = Column(Float, nullable=False, default=0.0)
    credits = Column(Integer, nullable=False, default=0)

    run = relationship("WorkflowRunModel", back_populates="records")
