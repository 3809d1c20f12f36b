import asyncio
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger as loguru_logger

import config
from config import APP_VERSION

# --- Loguru Configuration ---
LOGURU_LOG_DIR = os.environ.get("LOGURU_LOG_DIR", "mylogs")
LOGURU_LOG_FILE_PATH = os.path.join(LOGURU_LOG_DIR, 'enrichment_service.log')
LOGURU_ROTATION = "10 MB"
LOGURU_RETENTION = "5 days"
LOGURU_COMPRESSION = "zip"
LOGURU_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
LOGURU_CONSOLE_LEVEL = os.environ.get("LOGURU_CONSOLE_LEVEL", "INFO").upper()
LOGURU_FILE_LEVEL = os.environ.get("LOGURU_FILE_LEVEL", "DEBUG").upper()
LOGURU_FILE_ENABLED = os.environ.get("LOGURU_FILE_ENABLED", "true").lower() in ("1", "true", "yes")


def setup_logging():
    loguru_logger.remove()  # Remove default handler
    loguru_logger.add(sys.stderr, level=LOGURU_CONSOLE_LEVEL, format=LOGURU_FORMAT, colorize=True)
    if not LOGURU_FILE_ENABLED:
        return
    try:
        os.makedirs(LOGURU_LOG_DIR, exist_ok=True)
        loguru_logger.add(
            LOGURU_LOG_FILE_PATH,
            level=LOGURU_FILE_LEVEL,
            rotation=LOGURU_ROTATION,
            retention=LOGURU_RETENTION,
            compression=LOGURU_COMPRESSION,
            enqueue=True,
            format=LOGURU_FORMAT,
            encoding="utf-8",
        )
    except OSError as e:
        loguru_logger.warning(f"Could not set up Loguru file sink for '{LOGURU_LOG_FILE_PATH}': {e}")


setup_logging()

ServicesBuilder = Callable[[], Awaitable[Dict[str, Any]]]


async def build_services() -> Dict[str, Any]:
    """Creates the shared store, generators, bus, orchestrator and poller."""
    from entry_store import create_entry_store
    from enrichment_orchestrator import EnrichmentOrchestrator
    from image_client import OpenAIImageGenerator
    from llm_client import LlmTextGenerator
    from notification_bus import NotificationBus
    from reconciliation_poller import ReconciliationPoller

    firestore_client = None
    if config.ENTRY_STORE_BACKEND == 'firestore':
        from google.cloud.firestore_v1.async_client import AsyncClient as AsyncFirestoreClient
        loguru_logger.info(f"Initializing shared Firestore AsyncClient for project '{config.GCLOUD_PROJECT}'...")
        firestore_client = AsyncFirestoreClient(
            project=config.GCLOUD_PROJECT, database=config.FIRESTORE_DATABASE_ID or '(default)'
        )
    store = create_entry_store(firestore_client)
    if firestore_client is not None and not await store.test_connection():
        loguru_logger.warning("Firestore connection test failed. Entry reads and writes may fail.")
    bus = NotificationBus()
    image_generator = OpenAIImageGenerator()
    orchestrator = EnrichmentOrchestrator(store, LlmTextGenerator(), image_generator, bus)
    return {
        "firestore_client": firestore_client,
        "store": store,
        "bus": bus,
        "image_generator": image_generator,
        "orchestrator": orchestrator,
        "poller": ReconciliationPoller(store),
    }


async def close_services(state) -> None:
    orchestrator = getattr(state, 'orchestrator', None)
    if orchestrator is not None:
        try:
            drained = await asyncio.wait_for(orchestrator.drain(), timeout=config.IMAGE_TIMEOUT_SECONDS)
            loguru_logger.info(f"Drained {drained} in-flight enrichment task(s).")
        except asyncio.TimeoutError:
            loguru_logger.warning("Timed out waiting for in-flight enrichment tasks during shutdown.")
    image_generator = getattr(state, 'image_generator', None)
    if image_generator is not None and hasattr(image_generator, 'close'):
        await image_generator.close()
    client = getattr(state, 'firestore_client', None)
    if client is not None:
        loguru_logger.info("Closing shared Firestore AsyncClient...")
        client.close()


def create_app(services_builder: Optional[ServicesBuilder] = None) -> FastAPI:
    builder = services_builder or build_services

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loguru_logger.info("FastAPI application startup sequence initiated...")
        for name, value in (await builder()).items():
            setattr(app.state, name, value)
        if config.RESUME_PENDING_ON_STARTUP:
            await app.state.orchestrator.resume_pending()
        loguru_logger.info("Shared resources initialized.")
        yield
        loguru_logger.info("FastAPI application shutdown sequence initiated...")
        await close_services(app.state)
        loguru_logger.info("Shared resources cleaned up.")

    app = FastAPI(lifespan=lifespan, title="Dictionary Enrichment API", version=APP_VERSION)

    # --- Global Exception Handlers ---
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        loguru_logger.error(f"Request validation error: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        loguru_logger.error(f"HTTP exception: {exc.status_code} - {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        loguru_logger.exception("Unhandled exception:")
        return JSONResponse(status_code=500, content={"detail": "An internal server error occurred."})

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": APP_VERSION}

    from routers_fastapi.entries_router import router as entries_router
    app.include_router(entries_router)

    loguru_logger.info("FastAPI application instance created and routers included.")
    return app


app = create_app()

# if __name__ == "__main__":
#     import uvicorn
#     uvicorn.run(app, host="0.0.0.0", port=8080)
