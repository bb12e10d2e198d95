"""Persistence of workflow runs and execution records."""

from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from sqlalchemy.exc import SQLAlchemyError

from ..storage.database import get_db
from ..storage.models import WorkflowRunModel, ExecutionRecordModel
from ..models.core import (
    DailyOperations, ExecutionRecord, ExecutionStatusEnum, RecordStatus,
    RecordSummary, RunStatus, StepUsage
)
from .exceptions import RunNotFoundError, StorageError
from .logging import get_logger
from .error_recovery import with_retry

logger = get_logger(__name__)


SUMMARY_DAYS = 7
TOP_STEPS_LIMIT = 7


class StateManager:
    """Stores runs and the append-only execution record log.

    Every operation uses its own short-lived session, so one manager can be
    shared by concurrently executing runs.
    """

    def __init__(self):
        """Initialize the StateManager."""
        logger.info("StateManager initialized")

    @with_retry()
    def create_run(self, run_id: str, step_names: List[str], image_count: int) -> None:
        """
        Create a pending workflow run.

        Args:
            run_id: Unique identifier for the workflow run
            step_names: Display names of the steps, in execution order
            image_count: Number of input images

        Raises:
            StorageError: If database operations fail
        """
        db = next(get_db())
        try:
            db.add(WorkflowRunModel(
                id=run_id,
                status=ExecutionStatusEnum.PENDING.value,
                step_names=list(step_names),
                image_count=image_count,
                step_count=len(step_names),
                completed_outputs=0,
                started_at=datetime.utcnow()
            ))
            db.commit()
            logger.debug(f"Created run {run_id}")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error creating run {run_id}: {str(e)}")
            raise StorageError(f"Failed to create run: {str(e)}", operation="create_run", table="workflow_runs")
        finally:
            db.close()

    @with_retry()
    def update_run(
        self,
        run_id: str,
        status: ExecutionStatusEnum,
        completed_outputs: Optional[int] = None,
        error_message: Optional[str] = None,
        failed_step: Optional[str] = None,
        failed_image: Optional[str] = None
    ) -> None:
        """
        Update the status of a run. Terminal statuses stamp ``completed_at``.

        Raises:
            RunNotFoundError: If the run does not exist
            StorageError: If the update fails
        """
        db = next(get_db())
        try:
            run_model = db.query(WorkflowRunModel).filter(WorkflowRunModel.id == run_id).first()
            if not run_model:
                raise RunNotFoundError(run_id)

            run_model.status = status.value
            if completed_outputs is not None:
                run_model.completed_outputs = completed_outputs
            if error_message is not None:
                run_model.error_message = error_message
            if failed_step is not None:
                run_model.failed_step = failed_step
            if failed_image is not None:
                run_model.failed_image = failed_image
            if status.is_terminal:
                run_model.completed_at = datetime.utcnow()

            db.commit()
            logger.debug(f"Run {run_id} -> {status.value}")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error updating run {run_id}: {str(e)}")
            raise StorageError(f"Failed to update run: {str(e)}", operation="update_run", table="workflow_runs")
        finally:
            db.close()

    def get_run(self, run_id: str) -> Optional[RunStatus]:
        """
        Look up a run.

        Returns:
            RunStatus, or None if the run is unknown
        """
        db = next(get_db())
        try:
            run_model = db.query(WorkflowRunModel).filter(WorkflowRunModel.id == run_id).first()
            if not run_model:
                return None
            return self._to_run_status(run_model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retrieve run: {str(e)}", operation="get_run", table="workflow_runs")
        finally:
            db.close()

    def list_runs(self, limit: int = 50) -> List[RunStatus]:
        """Most recent runs first."""
        db = next(get_db())
        try:
            run_models = (
                db.query(WorkflowRunModel)
                .order_by(WorkflowRunModel.started_at.desc())
                .limit(limit)
                .all()
            )
            return [self._to_run_status(model) for model in run_models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list runs: {str(e)}", operation="list_runs", table="workflow_runs")
        finally:
            db.close()

    @with_retry()
    def append_records(self, records: Iterable[ExecutionRecord]) -> int:
        """
        Append execution records to the log. Records are never updated.

        Returns:
            Number of records written

        Raises:
            StorageError: If database operations fail
        """
        records = list(records)
        if not records:
            return 0

        db = next(get_db())
        try:
            for record in records:
                db.add(ExecutionRecordModel(
                    id=record.id,
                    run_id=record.run_id,
                    timestamp=record.timestamp,
                    image_id=record.image_id,
                    image_name=record.image_name,
                    step_id=record.step_id,
                    step_name=record.step_name,
                    status=record.status.value,
                    cost=record.cost,
                    credits=record.credits
                ))
            db.commit()
            logger.debug(f"Appended {len(records)} execution record(s)")
            return len(records)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error appending records: {str(e)}")
            raise StorageError(f"Failed to append records: {str(e)}", operation="append_records",
                               table="execution_records")
        finally:
            db.close()

    def list_records(self, run_id: Optional[str] = None, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """
        List execution records, oldest first.

        Args:
            run_id: Only records of this run when given
            limit: Maximum number of records
        """
        db = next(get_db())
        try:
            query = db.query(ExecutionRecordModel)
            if run_id is not None:
                query = query.filter(ExecutionRecordModel.run_id == run_id)
            query = query.order_by(ExecutionRecordModel.timestamp.asc())
            if limit is not None:
                query = query.limit(limit)
            return [self._to_record(model) for model in query.all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list records: {str(e)}", operation="list_records",
                               table="execution_records")
        finally:
            db.close()

    def summarize_records(self, now: Optional[datetime] = None) -> RecordSummary:
        """
        Aggregate the record log for the dashboard.

        Only successful records count towards operations, cost, credits,
        daily activity and top steps.

        Args:
            now: Reference time for the daily window (defaults to utcnow)
        """
        records = self.list_records()
        successful = [record for record in records if record.status == RecordStatus.SUCCESS]

        today = (now or datetime.utcnow()).date()
        per_day = Counter(record.timestamp.date() for record in successful)
        operations_by_day = []
        for offset in range(SUMMARY_DAYS - 1, -1, -1):
            day = today - timedelta(days=offset)
            operations_by_day.append(DailyOperations(date=day.isoformat(), operations=per_day.get(day, 0)))

        step_counts = Counter(record.step_name for record in successful)
        top_steps = [
            StepUsage(step_name=name, operations=count)
            for name, count in step_counts.most_common(TOP_STEPS_LIMIT)
        ]

        return RecordSummary(
            total_operations=len(successful),
            failed_operations=len(records) - len(successful),
            total_cost=round(sum(record.cost for record in successful), 6),
            total_credits=sum(record.credits for record in successful),
            unique_images=len({record.image_name for record in successful}),
            operations_by_day=operations_by_day,
            top_steps=top_steps
        )

    def clear_records(self) -> int:
        """
        Delete every execution record.

        Returns:
            Number of records deleted
        """
        db = next(get_db())
        try:
            deleted = db.query(ExecutionRecordModel).delete()
            db.commit()
            logger.info(f"Cleared {deleted} execution record(s)")
            return deleted
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to clear records: {str(e)}", operation="clear_records",
                               table="execution_records")
        finally:
            db.close()

    def _to_run_status(self, model: WorkflowRunModel) -> RunStatus:
        return RunStatus(
            run_id=model.id,
            status=ExecutionStatusEnum(model.status),
            image_count=model.image_count,
            step_count=model.step_count,
            completed_outputs=model.completed_outputs or 0,
            error_message=model.error_message,
            started_at=model.started_at,
            completed_at=model.completed_at
        )

    def _to_record(self, model: ExecutionRecordModel) -> ExecutionRecord:
        return ExecutionRecord(
            id=model.id,
            timestamp=model.timestamp,
            run_id=model.run_id,
            image_id=model.image_id,
            image_name=model.image_name,
            step_id=model.step_id,
            step_name=model.step_name,
            status=RecordStatus(model.status),
            cost=model.cost,
            credits=model.credits
        )
