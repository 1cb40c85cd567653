import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from brokerage.config import settings, validate_security_posture
from brokerage.database import async_session, init_db
from brokerage.models import *  # noqa: F403

APP_VERSION = "0.1.0"

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _background_loop(name: str, interval: int, initial_delay: int, job):
    """Run ``job(db)`` forever on its own session; a failed pass waits for the next one."""

    async def _loop() -> None:
        await asyncio.sleep(initial_delay)
        while True:
            try:
                async with async_session() as db:
                    await job(db)
            except Exception:
                logger.exception("Background task error (%s)", name)
            await asyncio.sleep(interval)

    return asyncio.create_task(_loop(), name=name)


async def _demand_job(db) -> None:
    from brokerage.services import demand_service

    result = await demand_service.run_autonomous_cycle(db)
    if result["signals_processed"] or result["offers_generated"]:
        logger.info("Demand cycle: %s", result)


async def _market_job(db) -> None:
    from brokerage.services import market_monitor_service, scheduler_service
    from brokerage.services.execution_service import get_dispatcher
    from brokerage.services.stripe_service import get_stripe_service

    await market_monitor_service.monitor_market(db)
    await scheduler_service.schedule_opportunities(db)
    await scheduler_service.run_assigned_tasks(db, dispatcher=get_dispatcher(), stripe=get_stripe_service())


async def _payment_job(db) -> None:
    from brokerage.services import payment_service
    from brokerage.services.stripe_service import get_stripe_service

    result = await payment_service.process_payment_queue(db, get_stripe_service())
    if result["processed"]:
        logger.info("Payment queue pass: %s", result)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables and seed credit packs
    validate_security_posture(settings)
    await init_db()

    from brokerage.services.execution_service import ExecutionQueue, get_dispatcher
    from brokerage.services.wallet_service import ensure_default_credit_packs

    async with async_session() as db:
        await ensure_default_credit_packs(db)

    queue = ExecutionQueue(async_session, dispatcher=get_dispatcher())
    queue.start()
    app.state.execution_queue = queue

    tasks: list[asyncio.Task] = []
    if settings.background_jobs_enabled:
        tasks = [
            _background_loop("demand-loop", settings.demand_interval_seconds, 30, _demand_job),
            _background_loop("market-loop", settings.market_scan_interval_seconds, 60, _market_job),
            _background_loop("payment-loop", settings.payment_queue_interval_seconds, 45, _payment_job),
        ]

    yield

    # Shutdown: cancel background tasks, drain workers and dispose connection pool
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await queue.stop()
    await get_dispatcher().aclose()

    from brokerage.database import dispose_engine

    await dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


async def _http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    step = getattr(exc, "step", "request")
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("[%s] %s %s -> %d: %s", step, request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "step": step},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("[validation] %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_errors(exc), "step": "validation"},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("[request] Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "step": "request"},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


def create_app() -> FastAPI:
    app = FastAPI(
        title="Agent Brokerage",
        description="Operator core for a paid agent-execution brokerage",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configurable via CORS_ORIGINS env var
    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(HTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    from brokerage.api import API_PREFIX, API_ROUTERS, ROOT_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)
    for router in ROOT_ROUTERS:
        app.include_router(router)

    return app


app = create_app()
