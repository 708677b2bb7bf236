"""Public HTTP entrypoint: payment admission, notification queries and DLQ operations.

When `run_consumer` is set the notification consumer runs inside this
process, so the simulate-failure toggle reaches the sender it uses.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paynotify.common.config import CommonSettings, settings as default_settings
from paynotify.common.errors import DomainError
from paynotify.common.logging import configure_logging, logger, trace_id_ctx
from paynotify.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paynotify.common.startup import log_startup_config
from paynotify.common.state_machine import STATUSES
from paynotify.common.tracing import instrument_app, setup_tracing, shutdown_tracing
from paynotify.services.notification.schemas import (
    DeadLetterListResponse,
    NotificationPage,
    NotificationResponse,
    NotificationStatusResponse,
    Pagination,
    ReplayAllResponse,
    ReplayResponse,
    SenderStatus,
    SimulationResponse,
)
from paynotify.services.payments.schemas import (
    PaymentCreateBody,
    PaymentDetailResponse,
    PaymentPage,
    PaymentResponse,
)
from paynotify.services.runtime import Runtime, open_runtime


STARTUP_KEYS = [
    "postgres_dsn",
    "redis_url",
    "kafka_bootstrap_servers",
    "payments_topic",
    "notification_queue",
    "dead_letter_topic",
    "run_consumer",
]
STATUS_PATTERN = "^(" + "|".join(STATUSES) + ")$"
REQUEST_LOCATIONS = ("body", "query", "header", "path")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _error_body(code: str, message: str, details: list[dict] | None = None) -> dict:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def register_error_handlers(app: FastAPI) -> None:
    """Render every failure as `{"success": false, "error": {...}}`."""

    @app.exception_handler(DomainError)
    async def domain_error_handler(_: Request, exc: DomainError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        details = []
        for error in exc.errors():
            loc = list(error["loc"])
            if loc and loc[0] in REQUEST_LOCATIONS:
                loc = loc[1:]
            details.append({"field": ".".join(str(part) for part in loc), "message": error["msg"]})
        message = details[0]["message"] if details else "invalid request"
        return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", message, details))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_body("INTERNAL_ERROR", "Internal server error"))


def create_app(settings: CommonSettings = default_settings, runtime_factory=open_runtime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        provider = setup_tracing(settings)
        log_startup_config(settings, STARTUP_KEYS)
        try:
            async with runtime_factory(settings) as runtime:
                app.state.runtime = runtime
                consumer_task = asyncio.create_task(runtime.run_consumer()) if settings.run_consumer else None
                try:
                    yield
                finally:
                    if consumer_task is not None:
                        consumer_task.cancel()
                        with suppress(asyncio.CancelledError):
                            await consumer_task
        finally:
            shutdown_tracing(provider)

    app = FastAPI(title="Paynotify API", lifespan=lifespan)
    instrument_app(app, settings)
    register_error_handlers(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        token = trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            trace_id_ctx.reset(token)
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/payments", status_code=201, response_model=PaymentResponse)
    async def create_payment(
        body: PaymentCreateBody,
        idempotency_key: str = Header(min_length=1, max_length=255),
        runtime: Runtime = Depends(get_runtime),
    ):
        """Admit a payment, or return the stored result for a repeated key."""

        return await runtime.payments.create_payment(
            amount=body.amount,
            currency=body.currency,
            account_id=body.account_id,
            email=body.email,
            description=body.description,
            idempotency_key=idempotency_key.strip(),
        )

    @app.get("/payments/{payment_id}", response_model=PaymentDetailResponse)
    async def get_payment(payment_id: str, runtime: Runtime = Depends(get_runtime)):
        return runtime.payments.get_payment(payment_id)

    @app.get("/payments", response_model=PaymentPage)
    async def list_payments(
        account_id: str = Query(min_length=1, max_length=50),
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        runtime: Runtime = Depends(get_runtime),
    ):
        return runtime.payments.list_payments(account_id, limit=limit, offset=offset)

    @app.get("/notifications", response_model=NotificationPage)
    async def list_notifications(
        status: str | None = Query(None, pattern=STATUS_PATTERN),
        payment_id: str | None = Query(None),
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        runtime: Runtime = Depends(get_runtime),
    ):
        items, total = runtime.notification_store.find_all(
            status=status,
            payment_id=payment_id,
            limit=limit,
            offset=offset,
        )
        return NotificationPage(
            notifications=[NotificationResponse.model_validate(item) for item in items],
            pagination=Pagination(total=total, limit=limit, offset=offset, has_more=offset + len(items) < total),
        )

    @app.get("/notifications/status", response_model=NotificationStatusResponse)
    async def notification_status(runtime: Runtime = Depends(get_runtime)):
        return NotificationStatusResponse(
            service=SenderStatus(**runtime.sender.get_status()),
            notifications=runtime.notification_store.count_by_status(),
        )

    @app.post("/notifications/simulate-failure", response_model=SimulationResponse)
    async def simulate_failure(runtime: Runtime = Depends(get_runtime)):
        runtime.sender.disable()
        return SimulationResponse(
            success=True,
            message="Email service disabled; new notifications will fail",
            status=SenderStatus(**runtime.sender.get_status()),
        )

    @app.post("/notifications/simulate-recovery", response_model=SimulationResponse)
    async def simulate_recovery(runtime: Runtime = Depends(get_runtime)):
        runtime.sender.enable()
        return SimulationResponse(
            success=True,
            message="Email service enabled",
            status=SenderStatus(**runtime.sender.get_status()),
        )

    @app.get("/notifications/dead-letter-queue", response_model=DeadLetterListResponse)
    async def list_dead_letters(
        max_messages: int = Query(100, ge=1, le=1000),
        runtime: Runtime = Depends(get_runtime),
    ):
        return await runtime.dead_letters.list_messages(max_messages)

    @app.post("/notifications/dead-letter-queue/retry-all", response_model=ReplayAllResponse)
    async def replay_all_dead_letters(runtime: Runtime = Depends(get_runtime)):
        return await runtime.dead_letters.replay_all()

    @app.post("/notifications/dead-letter-queue/{message_id}/retry", response_model=ReplayResponse)
    async def replay_dead_letter(message_id: str, runtime: Runtime = Depends(get_runtime)):
        return await runtime.dead_letters.replay_one(message_id)

    @app.get("/health")
    async def health(runtime: Runtime = Depends(get_runtime)):
        """Container health probe; 503 when the database or Redis is unreachable."""

        checks = await runtime.health()
        healthy = all(check["status"] == "healthy" for check in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "services": checks,
            },
        )

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()
