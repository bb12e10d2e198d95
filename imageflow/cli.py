"""Command line interface: run workflows, validate graphs and serve the API."""

import argparse
import json
import mimetypes
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from pydantic import ValidationError

from .config import (
    AppConfig,
    LogLevel,
    PROFILES,
    get_profile_config,
    load_config,
    validate_config
)
from .core.cancellation import CancellationToken
from .core.exceptions import GraphValidationError, WorkflowEngineError
from .core.graph_manager import GraphManager
from .core.logging import get_logger, setup_logging
from .models.core import (
    ExecutionStatusEnum, InputImage, RetryEvent, RunEvent, RunEventType, RunResult, WorkflowGraph
)
from .models.presets import list_prebuilt_steps


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="imageflow",
        description="Image Flow Engine - apply chains of generative image edits to batches of images"
    )

    parser.add_argument(
        "--env",
        choices=sorted(PROFILES),
        help="Named configuration profile"
    )
    parser.add_argument(
        "--config",
        help="Path to a .env configuration file"
    )
    parser.add_argument(
        "--database-url",
        help="Database connection URL"
    )
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument(
        "--log-file",
        help="Path to log file"
    )
    parser.add_argument(
        "--model",
        action="append",
        dest="models",
        help="Backend model to use; repeat to set the failover order"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run a workflow graph over image files")
    run_parser.add_argument("graph", help="Path to the workflow graph JSON")
    run_parser.add_argument("images", nargs="+", help="Input image files")
    run_parser.add_argument(
        "--output-dir",
        default=".",
        help="Directory for the edited images (default: current directory)"
    )
    run_parser.add_argument(
        "--no-record",
        action="store_true",
        help="Do not store the run and its execution records in the database"
    )

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow graph")
    validate_parser.add_argument("graph", help="Path to the workflow graph JSON")

    subparsers.add_parser("presets", help="List the pre-built steps")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve_parser.add_argument("--host", help="Host to bind the server to")
    serve_parser.add_argument("--port", type=int, help="Port to bind the server to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    records_parser = subparsers.add_parser("records", help="Execution record commands")
    records_subparsers = records_parser.add_subparsers(dest="records_command", help="Record commands")
    records_subparsers.add_parser("summary", help="Show the usage dashboard")
    records_subparsers.add_parser("clear", help="Delete all execution records")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env:
        config = get_profile_config(args.env)
    else:
        config = load_config(args.config)

    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = LogLevel(args.log_level)
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.models:
        overrides["backend_models"] = args.models
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "reload", False):
        overrides["reload"] = True

    if overrides:
        config = AppConfig(**{**config.model_dump(), **overrides})
    return config


def load_graph(path: str) -> WorkflowGraph:
    """Read a workflow graph from a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return WorkflowGraph.model_validate(json.load(f))


def load_image(path: str) -> InputImage:
    """Read an image file, guessing its media type from the extension."""
    media_type, _ = mimetypes.guess_type(path)
    if not media_type or not media_type.startswith("image/"):
        raise ValueError(f"Cannot determine the image type of {path}")
    with open(path, "rb") as f:
        data = f.read()
    return InputImage(name=os.path.basename(path), data=data, media_type=media_type)


def unique_file_names(outputs) -> List[str]:
    """Download names for a batch, suffixing repeats so no file overwrites another.

    The second ``edited-cat.png`` becomes ``edited-cat-2.png``, the third
    ``edited-cat-3.png``.
    """
    seen = {}
    names = []
    for output in outputs:
        name = output.download_name
        count = seen.get(name, 0) + 1
        seen[name] = count
        if count > 1:
            stem, ext = os.path.splitext(name)
            name = f"{stem}-{count}{ext}"
            while name in seen:
                count += 1
                name = f"{stem}-{count}{ext}"
            seen[name] = 1
        names.append(name)
    return names


def print_progress(event: RunEvent) -> None:
    if event.event_type in (RunEventType.STEP_STARTED, RunEventType.RUN_CANCELLED):
        print(event.message)
    elif event.event_type == RunEventType.OUTPUT_READY:
        print(f"  done: {event.image_name}")
    elif event.event_type == RunEventType.RUN_FAILED:
        print(f"Error: {event.message}", file=sys.stderr)


def print_retry(event: RetryEvent) -> None:
    print(f"  {event.backend} is rate limited, retrying in {event.delay:.1f}s "
          f"(attempt {event.attempt})")


def execute_with_interrupt(runner, images, steps, cancel_token: CancellationToken) -> RunResult:
    """Run on a worker thread so Ctrl-C cancels the run instead of killing it."""
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="imageflow-cli") as executor:
        future = executor.submit(
            runner.execute,
            images,
            steps,
            cancel_token=cancel_token,
            on_progress=print_progress,
            on_retry=print_retry
        )
        try:
            return future.result()
        except KeyboardInterrupt:
            print("Cancelling...")
            cancel_token.cancel("Workflow cancelled by user")
            return future.result()


def run_workflow(config: AppConfig, graph_path: str, image_paths: List[str],
                 output_dir: str, record: bool = True) -> int:
    """Run a graph over image files and write the outputs. Returns an exit code."""
    from .core.state_manager import StateManager
    from .core.workflow_runner import WorkflowRunner
    from .storage.database import init_database

    logger = get_logger(__name__)

    try:
        graph = load_graph(graph_path)
        images = [load_image(path) for path in image_paths]
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        steps = GraphManager(allow_branching=config.allow_branching).execution_order(graph)
    except GraphValidationError as e:
        print(f"Invalid workflow: {e.message}", file=sys.stderr)
        return EXIT_USAGE

    print(f"Workflow: {' -> '.join(step.name for step in steps)}")

    runner = WorkflowRunner(config)
    try:
        result = execute_with_interrupt(runner, images, steps, CancellationToken())
    except WorkflowEngineError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILED

    os.makedirs(output_dir, exist_ok=True)
    for output, file_name in zip(result.outputs, unique_file_names(result.outputs)):
        path = os.path.join(output_dir, file_name)
        with open(path, "wb") as f:
            f.write(output.data)
        print(f"Wrote {path}")

    if record:
        try:
            init_database(config.database_url, echo=config.database_echo,
                          pool_size=config.database_pool_size, max_overflow=config.database_max_overflow)
            state_manager = StateManager()
            state_manager.create_run(result.run_id, [step.name for step in steps], len(images))
            state_manager.append_records(result.records)
            state_manager.update_run(
                result.run_id,
                result.status,
                completed_outputs=len(result.outputs),
                error_message=result.error_message,
                failed_step=result.failed_step,
                failed_image=result.failed_image
            )
        except WorkflowEngineError as e:
            logger.error(f"Failed to record run {result.run_id}: {e.message}")

    if result.status == ExecutionStatusEnum.CANCELLED:
        return EXIT_CANCELLED
    if result.status != ExecutionStatusEnum.COMPLETED:
        return EXIT_FAILED
    return EXIT_OK


def validate_workflow(config: AppConfig, graph_path: str) -> int:
    """Print the execution order of a graph, or its validation errors."""
    try:
        graph = load_graph(graph_path)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    graph_manager = GraphManager(allow_branching=config.allow_branching)
    result = graph_manager.validate_graph(graph)
    for warning in result.warnings:
        print(f"Warning: {warning}")
    if not result.is_valid:
        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILED

    steps = graph_manager.execution_order(graph)
    for index, step in enumerate(steps, start=1):
        print(f"{index}. {step.name}")
    return EXIT_OK


def show_presets() -> int:
    for step in list_prebuilt_steps():
        print(f"{step.name}: {step.prompt}")
    return EXIT_OK


def run_records_command(command: Optional[str], config: AppConfig) -> int:
    """Show or clear execution records."""
    from .core.state_manager import StateManager
    from .storage.database import init_database

    if command not in ("summary", "clear"):
        print("Records command required. Use --help for options.")
        return EXIT_USAGE

    init_database(config.database_url, echo=config.database_echo,
                  pool_size=config.database_pool_size, max_overflow=config.database_max_overflow)
    state_manager = StateManager()

    if command == "clear":
        deleted = state_manager.clear_records()
        print(f"Deleted {deleted} execution record(s)")
        return EXIT_OK

    summary = state_manager.summarize_records()
    print(f"Total operations: {summary.total_operations}")
    print(f"Failed operations: {summary.failed_operations}")
    print(f"Total cost: ${summary.total_cost:.4f}")
    print(f"Total credits: {summary.total_credits}")
    print(f"Unique images: {summary.unique_images}")
    print("Operations by day:")
    for day in summary.operations_by_day:
        print(f"  {day.date}: {day.operations}")
    print("Top steps:")
    for usage in summary.top_steps:
        print(f"  {usage.step_name}: {usage.operations}")
    return EXIT_OK


def run_server(config: AppConfig) -> int:
    """Run the HTTP API server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server on {config.host}:{config.port}")

    uvicorn_config = config.get_uvicorn_config()
    if config.reload:
        # Reload needs an import string; the app then reads its config from the environment
        uvicorn.run("imageflow.main:app", **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)
    return EXIT_OK


def show_configuration(config: AppConfig) -> int:
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Backend Provider: {config.backend_provider}")
    print(f"  Backend Models: {', '.join(config.backend_models)}")
    print(f"  API Key: {'set' if config.api_key else 'not set'}")
    print(f"  Max Retries: {config.max_retries}")
    print(f"  Backoff: {config.initial_backoff_ms}ms - {config.max_backoff_ms}ms")
    print(f"  Failover Pause: {config.failover_pause_ms}ms")
    print(f"  Allow Branching: {config.allow_branching}")
    print(f"  Max Concurrent Runs: {config.max_concurrent_runs}")
    print(f"  Max Retained Runs: {config.max_retained_runs}")
    return EXIT_OK


def validate_configuration_command(config: AppConfig) -> int:
    """Validate configuration and show results."""
    try:
        validate_config(config)
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        return EXIT_FAILED
    print("Configuration validation: PASSED")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command line."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    try:
        config = load_configuration(args)
    except (ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count
    )

    if args.command == "config":
        if args.config_command == "show":
            return show_configuration(config)
        if args.config_command == "validate":
            return validate_configuration_command(config)
        print("Configuration command required. Use --help for options.")
        return EXIT_USAGE

    try:
        validate_config(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        if args.command == "run":
            return run_workflow(config, args.graph, args.images, args.output_dir, record=not args.no_record)
        if args.command == "validate":
            return validate_workflow(config, args.graph)
        if args.command == "presets":
            return show_presets()
        if args.command == "records":
            return run_records_command(args.records_command, config)
        if args.command == "serve":
            return run_server(config)
    except WorkflowEngineError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILED

    parser.print_help()
    return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
