from typing import Optional

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from ..config.settings import get_settings
from ..db.session import get_session_factory
from ..exceptions import (
    BatchNotFound,
    DuplicateFileError,
    InvalidJobTransition,
    InvalidMatchTransition,
    JobNotFound,
    MatchNotFound,
    UnknownCapCode,
    ValidationError,
)
from ..mapping.classifier import ColumnClassifier
from ..utils.logging import setup_logging
from .routes_imports import router as imports_router
from .routes_mappings import router as mappings_router
from .routes_matching import router as matching_router
from .routes_rates import router as rates_router
from .schemas import HealthResponse

logger = structlog.get_logger()


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DuplicateFileError)
    async def duplicate_file(request: Request, exc: DuplicateFileError):
        return JSONResponse(status_code=409, content={
            "detail": str(exc),
            "batch_id": exc.batch_id,
            "created_at": exc.created_at.isoformat(),
        })

    @app.exception_handler(ValidationError)
    async def validation_failed(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "problems": exc.problems})

    async def not_found(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    async def conflict(request: Request, exc: Exception):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    for error in (BatchNotFound, MatchNotFound, JobNotFound, UnknownCapCode):
        app.add_exception_handler(error, not_found)
    for error in (InvalidMatchTransition, InvalidJobTransition):
        app.add_exception_handler(error, conflict)


def create_app(session_factory: Optional[sessionmaker] = None,
               classifier: Optional[ColumnClassifier] = None) -> FastAPI:
    """Build the HTTP app; tests pass their own session factory."""
    load_dotenv()
    settings = get_settings()
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Provider rate sheet ingestion, vehicle matching and rate comparison"
    )
    app.state.session_factory = session_factory or get_session_factory()
    app.state.classifier = classifier

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(imports_router)
    app.include_router(matching_router)
    app.include_router(mappings_router)
    app.include_router(rates_router)
    _register_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    def health():
        return HealthResponse(status="healthy", service=settings.app_name, version=settings.app_version)

    logger.info("API configured", app_name=settings.app_name, version=settings.app_version)
    return app
