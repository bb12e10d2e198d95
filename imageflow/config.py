"""Configuration management for the Image Flow Engine.

Every field of ``AppConfig`` can be set from an ``IMAGEFLOW_<FIELD>``
environment variable; list fields take comma-separated values.
"""

import os
import typing
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "IMAGEFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


DEFAULT_BACKEND_MODEL = "gemini-2.5-flash-image-preview"
SUPPORTED_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")


class AppConfig(BaseModel):
    """Application configuration settings.

    Constructed once and passed explicitly to the runner, the backend
    clients and the execution engine.
    """

    # Application settings
    app_name: str = Field(default="Image Flow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Run store
    database_url: str = Field(default="sqlite:///./imageflow.db", description="Run store connection URL")
    database_echo: bool = Field(default=False, description="Log every SQL statement")
    database_pool_size: int = Field(default=5, description="Connection pool size (non-SQLite only)")
    database_max_overflow: int = Field(default=10, description="Connections allowed beyond the pool")

    # Backend settings
    api_key: Optional[str] = Field(default=None, repr=False, description="Image backend API key")
    backend_provider: str = Field(default="gemini", description="Registered backend provider name")
    backend_models: List[str] = Field(
        default_factory=lambda: [DEFAULT_BACKEND_MODEL],
        description="Ordered backend preference list; quota exhaustion fails over to the next"
    )
    api_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the backend REST API"
    )
    request_timeout: float = Field(default=120.0, description="Backend request timeout in seconds")

    # Retry and failover
    max_retries: int = Field(default=3, description="Retries per backend call after the first attempt")
    initial_backoff_ms: int = Field(default=1000, description="First retry delay in milliseconds")
    max_backoff_ms: int = Field(default=30000, description="Cap on the exponential retry delay")
    failover_pause_ms: int = Field(default=250, description="Pause before trying the next backend")

    # Workflow settings
    allow_branching: bool = Field(default=False, description="Accept branching graphs and run them as one chain")
    cost_per_step: float = Field(default=0.0025, description="Simulated cost of one successful step")
    credits_per_step: int = Field(default=1, description="Credits consumed by one successful step")

    # Execution engine
    max_concurrent_runs: int = Field(default=1, description="Runs executing at once")
    max_retained_runs: int = Field(
        default=50,
        description="Finished runs whose outputs stay in memory; the oldest is dropped first"
    )

    websocket_max_connections: int = Field(default=100, description="Maximum WebSocket connections")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Plain-text log format, None for the built-in one")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    health_check_timeout: float = Field(default=5.0, description="Health check timeout in seconds")
    slow_request_threshold: float = Field(default=5.0, description="Requests slower than this are logged")
    enable_performance_monitoring: bool = Field(default=True, description="Add response-time middleware")

    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="CORS allowed origins")
    cors_methods: List[str] = Field(
        default_factory=lambda: ["GET", "POST", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].split('+')[0].lower()
        if scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASE_SCHEMES)}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('backend_models')
    @classmethod
    def validate_backend_models(cls, models):
        """Strip blanks; an empty list is caught when backends are built."""
        return [model.strip() for model in models if model and model.strip()]

    @field_validator('max_retries', 'initial_backoff_ms', 'max_backoff_ms', 'failover_pause_ms')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Retry settings cannot be negative")
        return v

    @field_validator('max_concurrent_runs', 'max_retained_runs')
    @classmethod
    def validate_at_least_one(cls, v, info):
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("Request timeout must be positive")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")

    @property
    def failover_pause(self) -> float:
        """Failover pause in seconds."""
        return self.failover_pause_ms / 1000.0

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[typing.Mapping[str, str]] = None) -> 'AppConfig':
        """Create configuration from ``IMAGEFLOW_*`` environment variables.

        Unset variables keep the field default; pydantic coerces the strings.
        ``GEMINI_API_KEY`` is accepted when ``IMAGEFLOW_API_KEY`` is unset.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if typing.get_origin(field.annotation) is list:
                values[name] = [item for item in raw.split(',') if item]
            else:
                values[name] = raw

        if "api_key" not in values and environ.get("GEMINI_API_KEY"):
            values["api_key"] = environ["GEMINI_API_KEY"]
        return cls(**values)


# Global configuration instance, used only by the app factory
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that need the filesystem or cross-field checks."""
    errors = []

    if not config.backend_models:
        errors.append("At least one backend model must be configured")

    if config.initial_backoff_ms > config.max_backoff_ms:
        errors.append("initial_backoff_ms cannot exceed max_backoff_ms")

    directories = []
    if config.is_sqlite and ":memory:" not in config.database_url:
        directories.append(("database", os.path.dirname(config.database_url.replace("sqlite:///", ""))))
    if config.log_file:
        directories.append(("log", os.path.dirname(config.log_file)))

    for kind, directory in directories:
        if directory and not os.path.exists(directory):
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create {kind} directory {directory}: {e}")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Named presets selectable with ``--env`` on the command line
PROFILES: Dict[str, Dict[str, Any]] = {
    "development": {
        "debug": True,
        "reload": True,
        "log_level": LogLevel.DEBUG,
        "database_echo": True,
    },
    "testing": {
        "debug": True,
        "database_url": "sqlite:///:memory:",
        "log_level": LogLevel.WARNING,
        "api_key": "test-key",
        "backend_models": ["primary-model", "secondary-model"],
        "initial_backoff_ms": 0,
        "max_backoff_ms": 0,
        "failover_pause_ms": 0,
        "request_timeout": 5.0,
    },
}


def get_profile_config(name: str) -> AppConfig:
    """Build the configuration for a named profile."""
    if name not in PROFILES:
        raise ValueError(f"Unknown configuration profile: {name}. Known: {sorted(PROFILES)}")
    return AppConfig(**PROFILES[name])


def get_testing_config() -> AppConfig:
    return get_profile_config("testing")
