"""
FastAPI Backend for the mail sync engine.

API server with endpoints for:
- Initial and incremental mailbox sync
- Cached inbox, message and thread reads
- Label, read-state and send mutations
- Sync progress events and provider push webhooks
"""

import logging
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.core.config import settings
from backend.core.database import DatabaseManager
from backend.routers import mail
from backend.services.notifier import get_notifier
from backend.workers.sync_worker import build_sync_worker

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    logger.info("Starting mail sync API...")

    db_manager = DatabaseManager()
    await db_manager.connect()
    app.state.db = db_manager
    logger.info(f"Connected to database: {settings.mongodb_database}")

    app.state.notifier = get_notifier()
    app.state.mail_sync = build_sync_worker(db_manager.db, notifier=app.state.notifier)

    logger.info(f"API ready at http://0.0.0.0:{settings.api_port}")

    yield

    logger.info("Shutting down mail sync API...")
    await db_manager.disconnect()
    logger.info("Database connection closed")


app = FastAPI(
    title="Mail Sync API",
    description="""
    Keeps a local cache of Gmail and Outlook inboxes in step with the provider.

    ## Features
    - **Sync**: Cursor-based incremental sync with a lookback backfill
    - **Labels**: AI-assigned labels, editable and optionally written back
    - **Events**: Server-sent progress and saved-thread events
    - **Push**: Gmail Pub/Sub and Graph subscription webhooks
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Exception Handlers ==============

def _get_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return str(uuid.uuid4())[:8]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with user-friendly messages."""
    error_id = _get_error_id()
    logger.error(
        f"Validation error [{error_id}] on {request.method} {request.url.path}: "
        f"{exc.errors()}"
    )
    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Invalid request data. Please check your input and try again.",
            "error_id": error_id,
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    error_id = _get_error_id()
    logger.warning(
        f"HTTP {exc.status_code} [{error_id}] on {request.method} {request.url.path}: "
        f"{exc.detail}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": f"http_{exc.status_code}",
            "message": exc.detail,
            "error_id": error_id,
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors.

    Clients get a message with an error ID; the stack trace only goes to
    the log. Debug mode adds the exception type and message.
    """
    error_id = _get_error_id()
    logger.error(
        f"Unhandled exception [{error_id}]\n"
        f"  Request: {request.method} {request.url.path}\n"
        f"  Query: {request.query_params}\n"
        f"  Exception Type: {type(exc).__name__}\n"
        f"  Exception Message: {exc}\n"
        f"  Stack Trace:\n{traceback.format_exc()}"
    )

    content = {
        "error": "internal_server_error",
        "message": (
            "We encountered an issue processing your request. "
            f"Please try again. Error ID: {error_id}"
        ),
        "error_id": error_id,
    }
    if settings.debug:
        content["technical_details"] = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "path": request.url.path,
            "method": request.method,
        }
    return JSONResponse(status_code=500, content=content)


app.include_router(
    mail.router,
    prefix="/api/v1/mail",
    tags=["Mail"]
)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Mail Sync API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
        "health": "/health"
    }


# Health check at root level for load balancers
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backend.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug,
    )
