from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from autopilot.api.routes import router as api_router
from autopilot.core.config import get_settings
from autopilot.logging import configure_logging
from autopilot.middleware.correlation_id import CorrelationIdMiddleware
from autopilot.middleware.request_logging import RequestLoggingMiddleware
from autopilot.otel import get_fastapi_server_request_hook, setup_otel


configure_logging("autopilot-api")
logger = logging.getLogger("autopilot.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "service_started",
        extra={"source": settings.app_env, "reason": "dry_run" if settings.dry_run else None},
    )
    yield


app = FastAPI(title="CRM Autopilot", version=get_settings().app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel("autopilot-api", get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
