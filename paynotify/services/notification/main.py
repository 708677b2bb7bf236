"""Notification worker lifecycle: runs the delivery consumer plus probe endpoints."""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from paynotify.common.config import CommonSettings, settings as default_settings
from paynotify.common.logging import configure_logging
from paynotify.common.metrics import metrics_response
from paynotify.common.startup import log_startup_config
from paynotify.common.tracing import instrument_app, setup_tracing, shutdown_tracing
from paynotify.services.runtime import open_runtime


def create_app(settings: CommonSettings = default_settings, runtime_factory=open_runtime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run consumer loop with FastAPI application lifecycle."""

        configure_logging(settings.log_level)
        provider = setup_tracing(settings)
        log_startup_config(
            settings,
            ["postgres_dsn", "kafka_bootstrap_servers", "redis_url", "notification_queue"],
        )
        try:
            async with runtime_factory(settings) as runtime:
                app.state.runtime = runtime
                consumer_task = asyncio.create_task(runtime.run_consumer())
                try:
                    yield
                finally:
                    consumer_task.cancel()
                    with suppress(asyncio.CancelledError):
                        await consumer_task
        finally:
            shutdown_tracing(provider)

    app = FastAPI(title="Paynotify Notification Worker", lifespan=lifespan)
    instrument_app(app, settings)

    @app.get("/health")
    async def health():
        """Container health probe endpoint."""

        checks = await app.state.runtime.health()
        healthy = all(check["status"] == "healthy" for check in checks.values())
        return JSONResponse(status_code=200 if healthy else 503, content={"ok": healthy, "services": checks})

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()
