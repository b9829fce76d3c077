import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.requests import Request

from craftmatch.api.router import api_router
from craftmatch.core.config import get_settings
from craftmatch.core.telemetry import configure_api_logging, setup_api_telemetry, shutdown_api_telemetry
from craftmatch.services.email import get_email_notifier
from craftmatch.services.realtime import get_realtime_hub
from craftmatch.services.repository import get_repository

settings = get_settings()
configure_api_logging(settings)
logger = logging.getLogger(__name__)

_PROBE_PATHS = frozenset({"/healthz", "/readyz"})


async def _close_backends() -> None:
    # The LISTEN connection goes before the pool that NOTIFY publishes through.
    await get_realtime_hub().close()
    await get_repository().close()
    for provider in (get_realtime_hub, get_repository, get_email_notifier):
        provider.cache_clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("starting %s environment=%s", settings.app_name, settings.environment)
    try:
        yield
    finally:
        shutdown_api_telemetry(app, app.state.telemetry)
        await _close_backends()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
# Instrumentation has to wrap the app before its middleware stack is built on startup.
app.state.telemetry = setup_api_telemetry(app, settings)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    if request.url.path not in _PROBE_PATHS:
        logger.info(
            "%s %s -> %s in %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started_at) * 1000.0,
        )
    return response


app.include_router(api_router)
