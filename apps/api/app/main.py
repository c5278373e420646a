from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.events import InternalEvent, event_bus
from app.crm.seed import seed_defaults
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"operation": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    body = event.payload.get("payload")
    if not isinstance(body, dict):
        return
    logger.debug(
        "crm_domain_event",
        extra={"operation": event.name, "entity_type": body.get("entity_type"), "record_id": body.get("id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe_prefix("crm.", _on_crm_domain_event)
        _subscriptions_registered = True

    if get_settings().crm_seed_on_startup:
        session = SessionLocal()
        try:
            seed_defaults(session)
        finally:
            session.close()

    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Fieldbook CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
