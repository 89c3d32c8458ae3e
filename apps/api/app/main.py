from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import RefreshRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_tracing
from app.principal_activity.dispatcher import UPSTREAM_MUTATION_EVENT
from app.principal_activity.service import principal_activity_refresh_service


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _refresh_session_scope():
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


def _dispatch_to_celery(envelope: dict[str, Any]) -> None:
    from app.core.celery_app import refresh_principal_activity_task

    payload = envelope.get("payload") or {}
    hints = payload.get("principal_ids") if get_settings().principal_activity_refresh_scope == "hinted" else None
    refresh_principal_activity_task.delay(
        principal_ids=hints if isinstance(hints, list) else None,
        trigger="notification",
        correlation_id=envelope.get("correlation_id"),
    )


def _on_upstream_mutation(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    refresh_mode = get_settings().principal_activity_refresh_mode.lower()
    try:
        if refresh_mode == "celery":
            _dispatch_to_celery(envelope)
            return
        with _refresh_session_scope() as session:
            principal_activity_refresh_service.handle_mutation_event(session, envelope)
    except Exception as exc:
        logger.exception(
            "principal_activity.auto_refresh_failed",
            extra={"event_name": event.name, "refresh_mode": refresh_mode, "error": str(exc)[:500]},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(UPSTREAM_MUTATION_EVENT, _on_upstream_mutation)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "principal-activity-api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RefreshRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_tracing(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
