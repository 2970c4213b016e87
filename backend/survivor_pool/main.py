"""
backend/survivor_pool/main.py

Purpose:
    FastAPI application bootstrap: wires store, notification sink, score feeds
    and the survivor service onto app.state, registers the results job and
    maps the survivor error taxonomy to HTTP responses.

Dependencies:
    - survivor_pool.database
    - survivor_pool.services.survivor_service
    - survivor_pool.services.score_feed
"""

import logging
from contextlib import asynccontextmanager

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, OperationFailure

from survivor_pool.config import settings
from survivor_pool.database import close_db, connect_db
from survivor_pool.errors import BusinessRuleViolation, InfrastructureError, InvariantViolation
from survivor_pool.middleware.logging import StructuredLoggingMiddleware, setup_logging
from survivor_pool.routers.survivor import router as survivor_router
from survivor_pool.services.event_bus import InMemoryEventBus
from survivor_pool.services.event_handlers import register_event_handlers
from survivor_pool.services.notifications import EventBusNotificationSink, LoggingNotificationSink
from survivor_pool.services.score_feed import ScoreSyncService, build_score_feed
from survivor_pool.services.survivor_repository import MongoSurvivorStore
from survivor_pool.services.survivor_service import SurvivorService
from survivor_pool.workers.survivor_resolver import SurvivorResultsJob

logger = logging.getLogger("survivor_pool")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    client, db = await connect_db(settings)
    store = MongoSurvivorStore(db, client, max_attempts=settings.SURVIVOR_TRANSACTION_MAX_ATTEMPTS)

    bus = None
    if settings.EVENT_BUS_ENABLED:
        bus = InMemoryEventBus(
            ingress_maxsize=settings.EVENT_BUS_INGRESS_QUEUE_MAXSIZE,
            handler_maxsize=settings.EVENT_BUS_HANDLER_QUEUE_MAXSIZE,
            default_concurrency=settings.EVENT_BUS_HANDLER_DEFAULT_CONCURRENCY,
            error_buffer_size=settings.EVENT_BUS_ERROR_BUFFER_SIZE,
        )
        register_event_handlers(bus, db)
        await bus.start()
        notifications = EventBusNotificationSink(bus)
        logger.info("Event bus enabled")
    else:
        notifications = LoggingNotificationSink()
        logger.info("Event bus disabled via config")

    http_client = httpx.AsyncClient(timeout=settings.SCORE_FEED_TIMEOUT_SECONDS)
    feed = build_score_feed(settings, http_client)
    service = SurvivorService(store, notifications)
    score_sync = ScoreSyncService(store, feed) if feed.feed_names else None
    logger.info("Score feeds: %s", feed.feed_names or "none")

    app.state.db = db
    app.state.event_bus = bus
    app.state.survivor_service = service
    app.state.score_sync = score_sync

    scheduler = AsyncIOScheduler()
    if settings.SURVIVOR_AUTOMATION_ENABLED:
        job = SurvivorResultsJob(service, score_sync)
        scheduler.add_job(
            job.run,
            "interval",
            id="survivor_results",
            minutes=settings.SURVIVOR_RESULTS_INTERVAL_MINUTES,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info("Survivor results job every %d minutes", settings.SURVIVOR_RESULTS_INTERVAL_MINUTES)
    else:
        logger.info("Automated survivor processing disabled via config")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    if bus is not None:
        await bus.stop()
    await http_client.aclose()
    await close_db(client)


app = FastAPI(
    title="Survivor Pool",
    description="NFL survivor pool: pick one winner a week, lose and you're out",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)
app.add_middleware(StructuredLoggingMiddleware)

app.include_router(survivor_router)


@app.exception_handler(BusinessRuleViolation)
async def business_rule_handler(request: Request, exc: BusinessRuleViolation):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(InfrastructureError)
async def infrastructure_handler(request: Request, exc: InfrastructureError):
    logger.error("Infrastructure failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(InvariantViolation)
async def invariant_handler(request: Request, exc: InvariantViolation):
    logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid input."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health(request: Request):
    """Health check -- verifies DB connection and event bus state."""
    db = getattr(request.app.state, "db", None)
    try:
        result = await db.command("ping") if db is not None else {}
        db_ok = result.get("ok") == 1.0
    except ConnectionFailure:
        db_ok = False

    bus = getattr(request.app.state, "event_bus", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "event_bus": bus.stats() if bus is not None else None,
    }
