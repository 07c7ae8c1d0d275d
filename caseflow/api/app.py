"""
FastAPI application factory.

Creates and configures the case workflow engine API application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from caseflow import __version__
from caseflow.api.routes import router
from caseflow.config import get_settings
from caseflow.config.settings import DeliveryBackend, StoreBackend
from caseflow.core.errors import WorkflowError
from caseflow.messaging.broker import DeliveryQueue, MemoryDeliveryQueue, RedisDeliveryQueue
from caseflow.notifications.channels import DeliveryChannel, LoggingChannel, WebhookChannel
from caseflow.notifications.dispatcher import NotificationDispatcher
from caseflow.orchestrator.engine import WorkflowOrchestrator
from caseflow.storage.base import WorkflowStore
from caseflow.storage.memory import InMemoryWorkflowStore
from caseflow.storage.postgres.database import Database
from caseflow.storage.postgres.repository import PostgresWorkflowStore
from caseflow.storage.redis.connection import close_redis, get_redis
from caseflow.triggers.engine import TriggerEngine

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "TEMPLATE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSTANCE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "TASK_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "STAGE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CASE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "NOTIFICATION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSTANCE_FROZEN": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "CYCLIC_DEPENDENCY": status.HTTP_409_CONFLICT,
    "CONCURRENT_MODIFICATION": status.HTTP_409_CONFLICT,
    "TEMPLATE_INVALID": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "TASK_SPEC_INVALID": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "RULE_INVALID": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


async def build_store() -> WorkflowStore:
    """Create the configured workflow store."""
    settings = get_settings()

    if settings.store_backend == StoreBackend.POSTGRES:
        database = Database()
        await database.init()
        store: WorkflowStore = PostgresWorkflowStore(database, create_tables=settings.is_development)
        logger.info("Database connection established")
    else:
        store = InMemoryWorkflowStore()

    await store.init()
    return store


async def build_queue() -> DeliveryQueue:
    """Create the configured notification delivery queue."""
    settings = get_settings()

    if settings.delivery_backend == DeliveryBackend.REDIS:
        queue: DeliveryQueue = RedisDeliveryQueue(await get_redis())
        logger.info("Redis connection established")
    else:
        queue = MemoryDeliveryQueue()

    await queue.init()
    return queue


def build_channel() -> DeliveryChannel:
    notifications = get_settings().notifications
    if notifications.webhook_url:
        return WebhookChannel(notifications.webhook_url, timeout=notifications.webhook_timeout)
    return LoggingChannel()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the store, delivery queue, orchestrator and trigger engine unless
    they were injected through create_app().
    """
    settings = get_settings()
    logger.info("Starting Case Workflow Engine...")

    owns_components = getattr(app.state, "orchestrator", None) is None
    if owns_components:
        store = await build_store()
        dispatcher = NotificationDispatcher(store, queue=await build_queue(), channel=build_channel())
        app.state.orchestrator = WorkflowOrchestrator(store, dispatcher=dispatcher)
        app.state.trigger_engine = TriggerEngine(app.state.orchestrator)

    orchestrator: WorkflowOrchestrator = app.state.orchestrator
    await orchestrator.start()
    logger.info(f"Case Workflow Engine started - Environment: {settings.environment.value}")

    yield

    logger.info("Shutting down Case Workflow Engine...")
    await orchestrator.stop()

    if owns_components:
        await orchestrator.store.close()
        if settings.delivery_backend == DeliveryBackend.REDIS:
            await close_redis()

    logger.info("Case Workflow Engine shutdown complete")


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """Map engine error kinds to HTTP status codes."""
    status_code = ERROR_STATUS_CODES.get(exc.code, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message},
    )


def create_app(
    orchestrator: Optional[WorkflowOrchestrator] = None,
    trigger_engine: Optional[TriggerEngine] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests, embedding)
        trigger_engine: Pre-built trigger engine; defaults to one over the orchestrator
    """
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Case workflow orchestration engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    if orchestrator is not None:
        app.state.orchestrator = orchestrator
        app.state.trigger_engine = trigger_engine or TriggerEngine(orchestrator)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.include_router(router)

    # Root endpoint
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
        }

    return app


# Application instance for uvicorn
app = create_app()
