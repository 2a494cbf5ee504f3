from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from synergy_api.api.routes import router as api_router
from synergy_api.core.config import get_settings
from synergy_api.core.context import RequestContextMiddleware
from synergy_api.core.events import DomainEvent, event_bus
from synergy_api.crm.api import crm_error_response, error_response
from synergy_api.crm.errors import CRMError
from synergy_api.logging import configure_logging
from synergy_api.middleware.correlation_id import CorrelationIdMiddleware
from synergy_api.middleware.rate_limit import CrmMutationRateLimitMiddleware
from synergy_api.middleware.request_logging import RequestLoggingMiddleware
from synergy_api.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("synergy_api.lifecycle")

_synergy_event_types = [
    "crm.synergy.created",
    "crm.synergy.archived",
]


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_synergy_event(event: DomainEvent) -> None:
    payload = event.envelope.get("payload", {})
    logger.info(
        "synergy_event",
        extra={"event_name": event.name, "synergy_id": payload.get("synergy_id"), "deal_id": payload.get("deal_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    subscriptions = [("system.started", _on_system_started)]
    subscriptions.extend((event_name, _on_synergy_event) for event_name in _synergy_event_types)
    for event_name, handler in subscriptions:
        event_bus.subscribe(event_name, handler)
    event_bus.publish("system.started", {"service": "synergy-api"})
    try:
        yield
    finally:
        for event_name, handler in subscriptions:
            event_bus.unsubscribe(event_name, handler)


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(CRMError)
async def handle_crm_error(request: Request, exc: CRMError):  # type: ignore[no-untyped-def]
    return crm_error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # type: ignore[no-untyped-def]
    fields = sorted({".".join(str(part) for part in error["loc"] if part != "body") for error in exc.errors()})
    return error_response(
        request,
        status_code=422,
        code="validation_error",
        message="Request payload failed validation",
        details={"fields": fields},
    )


if settings.otel_enabled:
    setup_otel("synergy-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
