"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from savor_save.config import get_settings
from savor_save.errors import NotFoundError, StateConflictError, ValidationError
from savor_save.utils.logging import get_logger, setup_logging

# Setup logging first
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info("application_starting")

    store = await get_store()
    logger.info("store_ready", backend=type(store).__name__)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await close_store()


# Create FastAPI app
app = FastAPI(
    title="Savor Save Ledger",
    description="Order tracking, expense ledger and budget monitoring for Savor Save",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "savor-save-ledger"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Savor Save Ledger API",
        "docs": "/docs",
        "health": "/health",
    }


# Import and include routers
from savor_save.api.routes import close_store, get_session, get_store, router
from savor_save.api.websocket import handle_websocket_session

app.include_router(router, prefix="/api/v1", tags=["api"])


# WebSocket endpoint
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, user_id: str | None = None) -> None:
    """WebSocket endpoint for realtime order and expense updates."""
    session = get_session(user_id)
    if session.is_anonymous and not session.allow_anonymous:
        await websocket.close(code=1008, reason="Login required")
        return

    await handle_websocket_session(websocket, await get_store(), session)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "savor_save.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
