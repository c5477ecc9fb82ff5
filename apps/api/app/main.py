from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import install_error_handlers
from app.api.routes import router as api_router
from app.authz.seed import seed_default_roles
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.events import DomainEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.notifications import build_email_dispatcher, set_email_dispatcher


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system.started", extra={"status": event.payload.get("service")})


def _seed_roles() -> None:
    session = SessionLocal()
    try:
        seed_default_roles(session)
    finally:
        session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True
    if get_settings().seed_default_roles:
        _seed_roles()
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Greenex API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
install_error_handlers(app)
app.include_router(api_router)

settings = get_settings()
set_email_dispatcher(build_email_dispatcher(settings))

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
