from contextlib import asynccontextmanager
import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iptv_gateway.config import CustomSettings, setup_logging
from iptv_gateway.routers import main_router
from iptv_gateway.services.pipeline import APP_VERSION, create_pipeline


logger = logging.getLogger(__name__)


def create_app(
    settings: CustomSettings | None = None,
    http_client: httpx.AsyncClient | None = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """
    Build the application around one pipeline state.

    Args:
        settings: Configuration (read from the environment when omitted)
        http_client: Outbound client to share (created and closed by the pipeline when omitted)
        run_scheduler: Start the periodic refresh jobs
    """
    settings = settings or CustomSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events"""
        logger.info("="*60)
        logger.info("Starting IPTV Gateway...")
        logger.info("="*60)

        pipeline = create_pipeline(settings, http_client)
        try:
            logger.info("Loading enrichment hints...")
            await pipeline.start(run_scheduler=run_scheduler)
            app.state.pipeline = pipeline

            logger.info("="*60)
            logger.info("IPTV Gateway started successfully")
            logger.info("="*60)
        except Exception as e:
            logger.error("="*60)
            logger.error(f"Failed to start IPTV Gateway: {e}", exc_info=True)
            logger.error("="*60)
            await pipeline.shutdown()
            raise

        yield

        logger.info("="*60)
        logger.info("Shutting down IPTV Gateway...")
        logger.info("="*60)

        try:
            await pipeline.shutdown()
            logger.info("Pipeline stopped")
        except Exception as e:
            logger.error(f"Error during pipeline shutdown: {e}", exc_info=True)
        app.state.pipeline = None

        logger.info("="*60)
        logger.info("IPTV Gateway stopped")
        logger.info("="*60)

    app = FastAPI(
        title="IPTV Gateway",
        version=APP_VERSION,
        lifespan=lifespan
    )
    # Web players fetch the add-on cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept"],
    )
    app.include_router(main_router)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    return app


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error(f"Validation error for {request.method} {request.url.path}")
    logger.error(f"Validation details: {exc.errors()}")

    # Create a properly serializable error response
    errors = []
    for error in exc.errors():
        error_dict = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100]
        }
        errors.append(error_dict)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors
        }
    )


def build_default_app() -> FastAPI:
    settings = CustomSettings()
    setup_logging(settings.log_level)
    return create_app(settings)


app = build_default_app()
