"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints import router, init_dependencies
from .api.event_stream import EventStreamManager
from .api.sessions import SessionRegistry
from .config import EditorConfig, get_config
from .core.exceptions import WorkflowEditorError, create_error_response
from .core.executor_registry import ExecutorRegistry
from .core.logging import setup_logging, get_logger
from .core.middleware import ErrorHandlingMiddleware, status_code_for_error
from .storage.database import create_database_engine, create_tables, get_session_factory
from .storage.document_repository import DocumentRepository


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[EditorConfig] = None
        self.sessions: Optional[SessionRegistry] = None
        self.repository: Optional[DocumentRepository] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def initialize_storage(config: EditorConfig, logger) -> DocumentRepository:
    """Create the database engine and tables, returning the document repository."""
    try:
        engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(engine)
        logger.info("Database tables created")
        return DocumentRepository(get_session_factory(engine))
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def create_lifespan_handler(config: EditorConfig, executors: Optional[ExecutorRegistry] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        repository = initialize_storage(config, logger)
        registry = executors or ExecutorRegistry()
        if config.external_step_types:
            registry.register_deferred(config.external_step_types)
        sessions = SessionRegistry(config, executors=registry, event_stream=EventStreamManager())

        app_state.config = config
        app_state.sessions = sessions
        app_state.repository = repository
        app_state.logger = logger

        init_dependencies(sessions, repository, config)
        logger.info("Application startup completed successfully")

        yield

        # Shutdown
        logger.info(f"Shutting down {config.app_name}")
        try:
            sessions.close_all()
        except WorkflowEditorError as e:
            logger.error(f"Error closing editor sessions: {e}")

    return lifespan


async def handle_editor_error(request: Request, exc: WorkflowEditorError) -> JSONResponse:
    get_logger(__name__).warning(f"Workflow editor error on {request.url.path}: {exc.error_code}")
    return JSONResponse(status_code=status_code_for_error(exc), content=create_error_response(exc))


def create_app(config: Optional[EditorConfig] = None, executors: Optional[ExecutorRegistry] = None) -> FastAPI:
    """
    Create and configure FastAPI application instance.

    Args:
        config: Configuration, loaded from the environment when omitted
        executors: Step executors shared by every editor session
    """
    if config is None:
        config = get_config()

    app = FastAPI(
        title=config.app_name,
        description="Workflow editor engine: graph editing, validation and step-by-step execution",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, executors)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_exception_handler(WorkflowEditorError, handle_editor_error)

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    return app


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
