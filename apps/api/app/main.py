from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import exception_response
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import SessionLocal, get_db
from app.core.errors import DomainError
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.auto_messages import AutoMessageJobsMiddleware
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import MutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel
from app.outreach.jobs import auto_message_job_runner
from app.pipeline.service import STAGE_CHANGED_EVENT


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        generator.close()


def _on_lead_stage_changed(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    auto_message_job_runner.enqueue(_event_session_scope, event.payload)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(STAGE_CHANGED_EVENT, _on_lead_stage_changed)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield
    auto_message_job_runner.drain(timeout=get_settings().generation_timeout_seconds)


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(AutoMessageJobsMiddleware)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return exception_response(request, exc, code=exc.code)


settings = get_settings()
if settings.otel_enabled:
    setup_otel(SERVICE_NAME)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
