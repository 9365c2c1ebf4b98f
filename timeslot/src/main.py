"""
FastAPI application entry point for the recurring schedule engine.

This module initializes the FastAPI application with:
- Entity registry reflected from the configured entity tables
- CORS middleware for frontend development
- Exception handlers for consistent error responses
- Logging configuration

Environment Variables:
    TIMESLOT_DB_URL: Database URL
    TIMESLOT_ENTITY_TABLES: Entity tables series may target
    TIMESLOT_CONFLICT_SCOPES: Overlap scope columns per table
    TIMESLOT_ENV: Environment (production/development, default: development)
    TIMESLOT_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from timeslot.src.config.settings import AppSettings, get_settings
from timeslot.src.services.entity_registry import EntityRegistry
from timeslot.src.utils.logging_config import init_logging, get_logger


def build_entity_registry(settings: AppSettings, bind) -> EntityRegistry:
    """
    Reflect the configured entity tables into a registry.

    Args:
        settings: Application settings
        bind: Engine to reflect with

    Returns:
        Registry with every table from TIMESLOT_ENTITY_TABLES
    """
    registry = EntityRegistry()
    if settings.entity_table_list:
        registry.reflect(bind, settings.entity_table_list, settings.conflict_scope_map)
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: initialize logging, build the entity registry
    - Shutdown: dispose of the database engine

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    from timeslot.src.db.database import engine

    logger = get_logger("api")
    logger.info("Starting recurring schedule engine")

    if getattr(app.state, "entity_registry", None) is None:
        settings = get_settings()
        app.state.entity_registry = build_entity_registry(settings, engine)
    logger.info(
        f"Entity registry ready: {', '.join(app.state.entity_registry.names()) or 'no tables'}"
    )

    yield

    logger.info("Shutting down recurring schedule engine")
    engine.dispose()


# Initialize logging before creating app
init_logging()

# Create FastAPI application
app = FastAPI(
    title="Recurring Time-Slot API",
    description="Recurring schedules that materialize into individually editable "
                "time-slot bookings, expanded by a background worker.",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)
app.state.entity_registry = None


# Configure CORS middleware for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors.

    Returns:
        JSON response with validation error details
    """
    logger = get_logger("api")
    logger.warning(
        "Validation error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": exc.errors(),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": exc.errors(),
        }
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """
    Handle SQLAlchemy database errors.

    Returns:
        JSON response with database error message
    """
    logger = get_logger("db")
    logger.error(
        "Database error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Database Error",
            "message": "An error occurred while accessing the database. "
                      "Please try again later.",
        }
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle all other unhandled exceptions.

    Returns:
        JSON response with generic error message
    """
    logger = get_logger("api")
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


# Health check endpoint


@app.get("/health", tags=["Health"])
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Health status and application information
    """
    return {
        "status": "healthy",
        "service": "timeslot-engine",
        "version": "1.0.0",
    }


# API routers
from timeslot.src.api import series, jobs

app.include_router(series.router, prefix="/api")
app.include_router(jobs.router, prefix="/api")
