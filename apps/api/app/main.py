from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import ActivityMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_activity_event_types = [
    "activity.created",
    "activity.completed",
    "activity.canceled",
    "activity.deleted",
    "activity.updated",
    "lead.restored",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_activity_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    if not isinstance(payload, dict):
        return
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "activity_id": payload.get("activity_id"),
            "lead_id": payload.get("lead_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _activity_event_types:
            event_bus.subscribe(event_name, _on_activity_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(ActivityMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("activity-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
