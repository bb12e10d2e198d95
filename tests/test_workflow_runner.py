"""Tests for the workflow runner."""

import logging

import pytest

from imageflow.backends.base import BackendResponse
from imageflow.core.exceptions import (
    ConfigurationError, ExecutionEngineError, QuotaError, RejectedError, StepExecutionError
)
from imageflow.core.logging import RunContextFilter, current_logging_context
from imageflow.core.workflow_runner import WorkflowRunner
from imageflow.models.core import ExecutionStatusEnum, RecordStatus, RunEventType, StepDefinition

from conftest import QUOTA_MESSAGE, FakeBackend, RecordingCancellationToken, make_client, make_image


def steps(*names):
    return [StepDefinition(id=f"s{i}", name=name, prompt=name.lower()) for i, name in enumerate(names, start=1)]


class TestWorkflowRunnerSuccess:
    """Test cases for runs that complete."""

    def test_threads_bytes_through_every_step(self, config, token):
        backend = FakeBackend("primary-model")
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(backend)])
        images = [make_image("a.png", b"A"), make_image("b.png", b"B")]

        result = runner.execute(images, steps("Blur", "Sharpen"), cancel_token=token)

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert runner.status == ExecutionStatusEnum.COMPLETED
        assert [output.data for output in result.outputs] == [b"A|blur|sharpen", b"B|blur|sharpen"]
        assert [output.original_image_id for output in result.outputs] == [image.id for image in images]
        assert [output.original_file_name for output in result.outputs] == ["a.png", "b.png"]
        assert result.error is None
        result.raise_for_status()

    def test_images_processed_sequentially_in_order(self, config, token):
        backend = FakeBackend("primary-model")
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(backend)])

        runner.execute([make_image("a.png", b"A"), make_image("b.png", b"B")], steps("One", "Two"),
                       cancel_token=token)

        assert [call["data"] for call in backend.calls] == [b"A", b"A|one", b"B", b"B|one"]

    def test_success_records_carry_configured_cost(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        result = runner.execute([make_image()], steps("One", "Two"), cancel_token=token, run_id="run-1")

        assert len(result.records) == 2
        for record in result.records:
            assert record.status == RecordStatus.SUCCESS
            assert record.cost == config.cost_per_step
            assert record.credits == config.credits_per_step
            assert record.run_id == "run-1"
        assert [record.step_name for record in result.records] == ["One", "Two"]

    def test_progress_events(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])
        events = []

        runner.execute([make_image()], steps("One", "Two"), cancel_token=token, on_progress=events.append)

        assert [event.event_type for event in events] == [
            RunEventType.RUN_STARTED,
            RunEventType.STEP_STARTED,
            RunEventType.STEP_COMPLETED,
            RunEventType.STEP_STARTED,
            RunEventType.STEP_COMPLETED,
            RunEventType.OUTPUT_READY,
            RunEventType.RUN_COMPLETED,
        ]

    def test_output_ready_event_carries_the_image(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])
        events = []

        result = runner.execute([make_image("a.png", b"A"), make_image("b.png", b"B")], steps("One"),
                                cancel_token=token, on_progress=events.append)

        ready = [event for event in events if event.event_type == RunEventType.OUTPUT_READY]
        assert [event.output.data for event in ready] == [b"A|one", b"B|one"]
        assert [event.output.id for event in ready] == [output.id for output in result.outputs]
        assert ready[0].output.download_name == "edited-a.png"

    def test_log_records_carry_run_id(self, config, token, caplog):
        caplog.set_level(logging.INFO, logger="imageflow")
        caplog.handler.addFilter(RunContextFilter())
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        runner.execute([make_image()], steps("One"), cancel_token=token, run_id="run-42")

        runner_records = [r for r in caplog.records if r.name == "imageflow.core.workflow_runner"]
        assert runner_records
        assert {r.run_id for r in runner_records} == {"run-42"}
        assert current_logging_context() == {}

    def test_retries_reported(self, config, token):
        backend = FakeBackend(script=[Exception(QUOTA_MESSAGE), Exception(QUOTA_MESSAGE)])
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(backend)])
        retries = []

        result = runner.execute([make_image()], steps("One"), cancel_token=token, on_retry=retries.append)

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert [event.attempt for event in retries] == [1, 2]

    def test_failing_observer_does_not_break_run(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        def explode(event):
            raise RuntimeError("observer bug")

        result = runner.execute([make_image()], steps("One"), cancel_token=token, on_progress=explode)

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert len(result.outputs) == 1

    def test_runner_can_be_reused(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        runner.execute([make_image()], steps("One"), cancel_token=token)
        result = runner.execute([make_image()], steps("One"))

        assert result.status == ExecutionStatusEnum.COMPLETED


class TestWorkflowRunnerCancellation:
    """Test cases for cancellation."""

    def test_cancel_between_steps(self, config, token):
        backend = FakeBackend()
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(backend)])
        events = []

        def on_progress(event):
            events.append(event)
            if event.event_type == RunEventType.STEP_COMPLETED and event.step_index == 0:
                token.cancel()

        result = runner.execute(
            [make_image("a.png"), make_image("b.png")], steps("One", "Two"),
            cancel_token=token, on_progress=on_progress
        )

        assert result.status == ExecutionStatusEnum.CANCELLED
        assert result.outputs == []
        assert result.error is None
        assert len(backend.calls) == 1
        assert events[-1].event_type == RunEventType.RUN_CANCELLED
        result.raise_for_status()

    def test_cancel_keeps_finished_outputs(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        def on_progress(event):
            if event.event_type == RunEventType.OUTPUT_READY:
                token.cancel()

        result = runner.execute(
            [make_image("a.png"), make_image("b.png")], steps("One"),
            cancel_token=token, on_progress=on_progress
        )

        assert result.status == ExecutionStatusEnum.CANCELLED
        assert [output.original_file_name for output in result.outputs] == ["a.png"]

    def test_cancel_during_backoff(self, config):
        token = RecordingCancellationToken(cancel_on_sleep=1)
        backend = FakeBackend(always=Exception(QUOTA_MESSAGE))
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(backend)])

        result = runner.execute([make_image()], steps("One"), cancel_token=token)

        assert result.status == ExecutionStatusEnum.CANCELLED
        assert result.records == []


class TestWorkflowRunnerFailure:
    """Test cases for runs that fail."""

    def test_rejection_halts_batch(self, config, token):
        backend = FakeBackend(script=[None, None, BackendResponse(block_reason="SAFETY")])
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(backend)])
        events = []

        result = runner.execute(
            [make_image("one.png"), make_image("two.png"), make_image("three.png")],
            steps("First", "Second"),
            cancel_token=token,
            on_progress=events.append
        )

        assert result.status == ExecutionStatusEnum.FAILED
        assert [output.original_file_name for output in result.outputs] == ["one.png"]
        assert [record.status for record in result.records] == [
            RecordStatus.SUCCESS, RecordStatus.SUCCESS, RecordStatus.FAILURE
        ]
        failure = result.records[-1]
        assert failure.image_name == "two.png"
        assert failure.step_name == "First"
        assert failure.cost == 0.0
        assert failure.credits == 0
        assert len(backend.calls) == 3
        assert result.failed_step == "First"
        assert result.failed_image == "two.png"
        assert '"First"' in result.error_message and '"two.png"' in result.error_message
        assert isinstance(result.error, StepExecutionError)
        assert isinstance(result.error.cause, RejectedError)
        assert events[-1].event_type == RunEventType.RUN_FAILED

        with pytest.raises(StepExecutionError):
            result.raise_for_status()

    def test_quota_error_names_step_and_image(self, config, token):
        primary = FakeBackend("primary-model", always=Exception(QUOTA_MESSAGE))
        secondary = FakeBackend("secondary-model", always=Exception(QUOTA_MESSAGE))
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(primary), make_client(secondary)])

        result = runner.execute([make_image("cat.png")], steps("Vintage Look"), cancel_token=token)

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.error_message.startswith('Quota exceeded while processing "Vintage Look" for "cat.png"')
        assert isinstance(result.error.cause, QuotaError)
        assert len(result.records) == 1

    def test_no_images(self, config):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        with pytest.raises(ExecutionEngineError):
            runner.execute([], steps("One"))
        assert runner.status == ExecutionStatusEnum.IDLE

    def test_no_steps(self, config):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])

        with pytest.raises(ExecutionEngineError):
            runner.execute([make_image()], [])

    def test_already_running(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [make_client(FakeBackend())])
        nested = []

        def on_progress(event):
            if event.event_type == RunEventType.RUN_STARTED:
                try:
                    runner.execute([make_image()], steps("One"))
                except ExecutionEngineError as e:
                    nested.append(e)

        result = runner.execute([make_image()], steps("One"), cancel_token=token, on_progress=on_progress)

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert len(nested) == 1
        assert "already running" in nested[0].message

    def test_empty_backend_list(self, config, token):
        runner = WorkflowRunner(config, backends_factory=lambda: [])

        result = runner.execute([make_image()], steps("One"), cancel_token=token)

        assert result.status == ExecutionStatusEnum.FAILED
        assert isinstance(result.error.cause, ConfigurationError)

    def test_backend_factory_error_resets_status(self, config, token):
        def broken_factory():
            raise ConfigurationError("No backend models configured")

        runner = WorkflowRunner(config, backends_factory=broken_factory)

        with pytest.raises(ConfigurationError):
            runner.execute([make_image()], steps("One"), cancel_token=token)
        assert runner.status == ExecutionStatusEnum.IDLE
