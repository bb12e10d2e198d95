"""Application factory for creating FastAPI instances."""

from datetime import datetime
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.error_recovery import HealthChecker
from .core.graph_manager import GraphManager
from .core.execution_engine import ExecutionEngine
from .core.state_manager import StateManager
from .core.websocket_manager import WebSocketManager
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
from .storage.database import get_db, init_database
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.state_manager: Optional[StateManager] = None
        self.graph_manager: Optional[GraphManager] = None
        self.websocket_manager: Optional[WebSocketManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.health_checker: Optional[HealthChecker] = None


def setup_health_checks(app_state: ApplicationState) -> HealthChecker:
    """Register health checks for the database, the engine and WebSocket monitoring."""
    health_checker = HealthChecker()
    execution_engine = app_state.execution_engine
    websocket_manager = app_state.websocket_manager
    config = app_state.config

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"message": "Database connection successful"}

    def check_execution_engine():
        return {
            "message": "Execution engine operational",
            "active_runs": len(execution_engine.get_active_runs()),
            "max_concurrent_runs": config.max_concurrent_runs
        }

    def check_backends():
        if not config.backend_models:
            raise RuntimeError("No backend models configured")
        return {
            "message": "Backends configured",
            "provider": config.backend_provider,
            "models": list(config.backend_models),
            "api_key_configured": bool(config.api_key)
        }

    def check_websocket_manager():
        return {
            "message": "WebSocket manager operational",
            "connections": websocket_manager.get_connection_count(),
            "pending_broadcasts": websocket_manager.pending_broadcasts()
        }

    health_checker.register_check("database", check_database, timeout=config.health_check_timeout)
    health_checker.register_check("execution_engine", check_execution_engine, timeout=config.health_check_timeout)
    health_checker.register_check("backends", check_backends, timeout=config.health_check_timeout)
    health_checker.register_check("websocket_manager", check_websocket_manager, timeout=config.health_check_timeout)

    return health_checker


def initialize_core_components(config: AppConfig, app_state: ApplicationState, backends_factory=None) -> None:
    """Initialize core application components."""
    state_manager = StateManager()
    graph_manager = GraphManager(allow_branching=config.allow_branching)
    websocket_manager = WebSocketManager(max_connections=config.websocket_max_connections)
    execution_engine = ExecutionEngine(
        config,
        state_manager=state_manager,
        graph_manager=graph_manager,
        websocket_manager=websocket_manager,
        backends_factory=backends_factory
    )

    app_state.config = config
    app_state.state_manager = state_manager
    app_state.graph_manager = graph_manager
    app_state.websocket_manager = websocket_manager
    app_state.execution_engine = execution_engine

    init_dependencies(
        graph_manager=graph_manager,
        execution_engine=execution_engine,
        state_manager=state_manager,
        websocket_manager=websocket_manager
    )


def create_lifespan_handler(config: AppConfig, app_state: ApplicationState, backends_factory=None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            init_database(
                config.database_url,
                echo=config.database_echo,
                pool_size=config.database_pool_size,
                max_overflow=config.database_max_overflow
            )
            logger.info("Database tables created")

            initialize_core_components(config, app_state, backends_factory)
            app_state.health_checker = setup_health_checks(app_state)

            app_state.websocket_manager.start_broadcast_processor()
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        logger.info(f"Shutting down {config.app_name}")
        app_state.websocket_manager.stop_broadcast_processor()
        app_state.execution_engine.shutdown()

    return lifespan


def create_app(config: Optional[AppConfig] = None, backends_factory=None) -> FastAPI:
    """Create and configure FastAPI application instance.

    Args:
        config: Application configuration; loaded from the environment when omitted
        backends_factory: Overrides how backend clients are built for each run
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app_state = ApplicationState()

    app = FastAPI(
        title=config.app_name,
        description="Apply chains of generative image transformations to batches of images",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, app_state, backends_factory)
    )
    app.state.imageflow = app_state

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)

    app.include_router(router)

    add_health_endpoints(app, config, app_state)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig, app_state: ApplicationState) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        if app_state.health_checker is None:
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "starting",
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        results = await app_state.health_checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503

        return JSONResponse(
            status_code=status_code,
            content={
                "service": service_name,
                "version": config.app_version,
                **results
            }
        )
