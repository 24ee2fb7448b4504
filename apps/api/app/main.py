from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.api import enrollment_manager
from app.automation.service import system_actor
from app.automation.triggers import TRIGGER_EVENT_NAMES, TriggerEvent
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _workflow_session_scope():
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


def _parse_contact_id(envelope: dict[str, Any]) -> uuid.UUID | None:
    payload = envelope.get("payload")
    raw = envelope.get("contact_id")
    if raw is None and isinstance(payload, dict):
        raw = payload.get("contact_id")
    if isinstance(raw, uuid.UUID):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _on_trigger_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    contact_id = _parse_contact_id(envelope)
    if contact_id is None:
        logger.warning("automation_trigger_event_ignored", extra={"event_name": event.name, "reason": "missing contact_id"})
        return

    payload = envelope.get("payload")
    trigger_event = TriggerEvent(
        type=event.name,
        contact_id=contact_id,
        payload=dict(payload) if isinstance(payload, dict) else {},
    )
    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
    try:
        with _workflow_session_scope() as session:
            enrollment_manager.ingest_event(session, trigger_event, actor_user=system_actor(correlation_id))
    except Exception as exc:
        logger.exception("automation_trigger_ingest_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in TRIGGER_EVENT_NAMES:
            event_bus.subscribe(event_name, _on_trigger_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": SERVICE_NAME})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
