"""FastAPI application factory and server entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..utils.logging import configure_logging
from .config import ApiSettings
from .deps.providers import (
    get_job_runner,
    get_job_store,
    get_settings,
    get_source_lookup,
    use_settings,
)
from .errors import register_error_handlers

logger = logging.getLogger(__name__)


def _report_config_issues() -> None:
    from ..config import validate_config

    issues = validate_config()
    for issue in issues:
        level = issue.get("level", "WARNING")
        msg = issue.get("message", "")
        if level == "ERROR":
            logger.error("Config validation: %s", msg)
        else:
            logger.warning("Config validation: %s", msg)
    if not issues:
        logger.info("Config validation: all checks passed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    from .. import config as _cfg

    settings: ApiSettings = get_settings()
    configure_logging(settings.log_level, _cfg.LOG_FORMAT)
    logger.info("Starting bulk_engine API on %s:%s", settings.host, settings.port)
    _report_config_issues()

    # Initialise async resources
    store = get_job_store()
    await store.initialize()
    lookup = get_source_lookup()
    await lookup.initialize()
    runner = get_job_runner()

    # Re-drive jobs orphaned by a previous process, then keep sweeping
    recovery_task = None
    if settings.recovery_enabled and _cfg.RECOVERY_ENABLED:
        recovery_task = asyncio.create_task(runner.recovery_loop(), name="bulk-job-recovery")

    yield

    # Cleanup
    if recovery_task is not None:
        recovery_task.cancel()
        with suppress(asyncio.CancelledError):
            await recovery_task
    await runner.shutdown()
    await lookup.close()
    await store.close()
    logger.info("Shutting down bulk_engine API")


def create_app(settings: ApiSettings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = get_settings()
    else:
        use_settings(settings)

    app = FastAPI(
        title="Bulk Job Engine API",
        description="Bulk background job orchestration: eligibility, batching, progress polling and cancellation.",
        version="1.0.0",
        lifespan=_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS
    origins = [o.strip() for o in settings.cors_origins.split(",")]
    allow_creds = "*" not in origins
    if not allow_creds:
        logger.warning(
            "CORS_ORIGINS contains '*'. Credentials will NOT be allowed. "
            "Set explicit origins (e.g. 'http://localhost:5173') for "
            "credentialed cross-origin requests."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_creds,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handlers
    register_error_handlers(app)

    # Routers: imported lazily so a broken module does not block startup
    from .routers import all_routers

    for router in all_routers():
        app.include_router(router)

    return app


def run_server() -> None:
    """CLI entry point: ``python -m bulk_engine.api.main``."""
    import uvicorn

    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
