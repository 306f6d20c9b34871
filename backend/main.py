"""FastAPI application entry point for the workflow and orchestrator backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.data_context import EmptyDataProvider
from api.routes import router
from api.routes import set_run_manager as set_routes_run_manager
from api.websocket import set_run_manager as set_websocket_run_manager
from api.websocket import websocket_router
from config import configure_logging, settings
from events import get_event_bus
from metrics import MetricsCollector
from models.database import RunStore
from run_manager import RunManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the run store, metrics collector, event bus and run manager on
    startup and cancels in-flight workflow runs on shutdown.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
    )

    event_bus = get_event_bus()
    metrics_collector = MetricsCollector()

    run_store: RunStore | None = None
    try:
        run_store = RunStore(settings.database_path)
        await run_store.init()
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("run_store_init_failed", error=str(e))
        run_store = None

    run_manager = RunManager(
        event_bus,
        run_store=run_store,
        metrics_collector=metrics_collector,
        data_provider=EmptyDataProvider(),
    )

    set_routes_run_manager(run_manager)
    set_websocket_run_manager(run_manager)

    app.state.run_manager = run_manager
    app.state.run_store = run_store

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.run_manager.cleanup_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Agent Workflow Orchestrator",
    description="Backend API for running visual agent workflows and "
    "hierarchical AI role orchestrations.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["runs"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Agent Workflow Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
