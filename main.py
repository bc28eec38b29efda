import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from app.api.v1.api import api_router
from app.config import APP_VERSION, Settings
from app.container import ServiceContainer, build_container
from app.exceptions import JobAlreadyRunningError, NotAuthenticatedError
from app.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Without a container, services are built from the environment on startup.
    """
    if settings is None:
        settings = container.settings if container is not None else Settings.from_env()

    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Invoice Harvester",
        description="Automated extraction of invoice data from mailbox PDF attachments",
        version=APP_VERSION
    )
    app.state.services = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        same_site="lax",
        https_only=settings.frontend_url.startswith("https://")
    )

    @app.exception_handler(NotAuthenticatedError)
    async def not_authenticated_handler(request: Request, exc: NotAuthenticatedError):
        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})

    @app.exception_handler(JobAlreadyRunningError)
    async def job_running_handler(request: Request, exc: JobAlreadyRunningError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.on_event("startup")
    def on_startup():
        if app.state.services is None:
            settings.validate()
            app.state.services = build_container(settings)

        if settings.background_job_enabled:
            app.state.services.job_runner.start()
        else:
            logger.info("Background job disabled")

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.services is not None:
            app.state.services.shutdown()

    app.include_router(api_router)

    @app.get("/")
    def health_check():
        return {"status": "ok"}

    @app.get("/api/version")
    def version_info():
        """Version and build metadata shown in the frontend footer."""
        return {
            "version": APP_VERSION,
            "buildDate": settings.build_date,
            "gitCommit": settings.git_commit,
            "gitBranch": settings.git_branch,
        }

    return app


app = create_app()
