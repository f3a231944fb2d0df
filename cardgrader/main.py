import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib.metadata import version as pkg_version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cardgrader.api import cards_router, credentials_router, health_router
from cardgrader.config import settings
from cardgrader.models.failure import ApiResponse, KnownError
from cardgrader.services.credentials import SettingsCredentialProvider
from cardgrader.services.factory import build_processor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the card processor for the lifetime of the app."""
    if settings.collection_backend == "database":
        from cardgrader.db.database import init_db

        await init_db()

    credentials = SettingsCredentialProvider(settings)
    processor = build_processor(settings, credentials=credentials)
    app.state.credentials = credentials
    app.state.processor = processor
    await processor.start()
    try:
        yield
    finally:
        await processor.stop()
        if settings.collection_backend == "database":
            from cardgrader.db.database import close_db

            await close_db()


app = FastAPI(
    title=settings.app_name,
    version=pkg_version("cardgrader"),
    lifespan=lifespan,
)


@app.exception_handler(KnownError)
async def known_error_handler(_request: Request, exc: KnownError) -> JSONResponse:
    """Explainable failures become a classified response envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Anything unexplained still answers with the response envelope."""
    logger.error("UNHANDLED_REQUEST_ERROR", exc_info=exc, extra={"error": type(exc).__name__})
    return JSONResponse(
        status_code=500,
        content=ApiResponse.unknown_failure(detail=type(exc).__name__).model_dump(mode="json"),
    )


app.include_router(cards_router)
app.include_router(credentials_router)
app.include_router(health_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
