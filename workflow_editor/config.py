"""Configuration management for the workflow editor service."""

import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database backends, keyed by URL scheme."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


ENV_PREFIX = "WORKFLOW_EDITOR_"

# Settings read from the environment as comma separated lists
LIST_SETTINGS = {"cors_origins", "external_step_types"}


class EditorConfig(BaseModel):
    """
    Editor engine and service settings.

    Every field can be set through ``WORKFLOW_EDITOR_<FIELD_NAME>``; see
    ``from_env``. The engine only reads the editor settings; the rest
    configure the HTTP service around it.
    """

    # Application
    app_name: str = Field(default="Workflow Editor Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Document storage
    database_url: str = Field(default="sqlite:///./workflow_editor.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Editor
    max_history_size: int = Field(default=50, ge=1, description="Maximum number of undo snapshots")
    duplicate_offset_x: float = Field(default=50.0, description="Horizontal offset for duplicated nodes")
    duplicate_offset_y: float = Field(default=50.0, description="Vertical offset for duplicated nodes")
    recent_documents_limit: int = Field(default=10, ge=1, description="Number of documents in the recent list")
    external_step_types: List[str] = Field(
        default_factory=list, description="Step types completed by out-of-process workers over HTTP"
    )

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Plain log format; the built-in format when unset")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Log file size in bytes before rotation")
    log_backup_count: int = Field(default=5, description="Number of rotated log files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="CORS allowed origins")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        scheme = v.split("://")[0].split("+")[0].lower()
        if scheme not in {t.value for t in DatabaseType}:
            raise ValueError(f"Unsupported database scheme: '{scheme}'")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(self.database_url.split("://")[0].split("+")[0].lower())

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_database_connect_args(self) -> Dict[str, Any]:
        """SQLite connections are shared with the event loop thread."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug,
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EditorConfig":
        """
        Build a configuration from ``WORKFLOW_EDITOR_*`` variables.

        Values are handed to pydantic as strings, so ``"9001"`` becomes an int
        and ``"yes"``/``"on"``/``"1"`` become True. List settings are comma
        separated. Unset variables keep the field default.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name in LIST_SETTINGS:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw
        return cls(**values)


# Process-wide configuration, used by the application factory only
_config: Optional[EditorConfig] = None


def get_config() -> EditorConfig:
    global _config
    if _config is None:
        _config = EditorConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> EditorConfig:
    """
    Load ``config_file`` (or ``./.env`` when present) into the environment, then build the configuration.

    Raises:
        ConfigurationError: If ``config_file`` is given but does not exist
    """
    global _config
    if config_file and not os.path.exists(config_file):
        raise ConfigurationError(f"Config file not found: {config_file}", config_file=config_file)
    env_file = config_file or ".env"
    if os.path.exists(env_file):
        load_dotenv(env_file)
    _config = EditorConfig.from_env()
    return _config


def reset_config():
    """Forget the process-wide configuration (mainly for testing)."""
    global _config
    _config = None


def get_development_config() -> EditorConfig:
    return EditorConfig(debug=True, reload=True, log_level=LogLevel.DEBUG, database_echo=True)


def get_testing_config() -> EditorConfig:
    return EditorConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_history_size=20,
    )
