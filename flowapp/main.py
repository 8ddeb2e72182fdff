from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from flowapp.api.routes import router as api_router
from flowapp.automation.registry import trigger_registry
from flowapp.core.config import get_settings
from flowapp.core.database import SessionLocal, get_db
from flowapp.core.events import InternalEvent, event_bus
from flowapp.logging import configure_logging
from flowapp.middleware.correlation_id import CorrelationIdMiddleware
from flowapp.middleware.request_logging import RequestLoggingMiddleware
from flowapp.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("flowapp.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"status": event.name})


@contextmanager
def _session_scope():
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
        try:
            next(generator)
        except StopIteration:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True

    with _session_scope() as session:
        trigger_registry.reload(session)
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
