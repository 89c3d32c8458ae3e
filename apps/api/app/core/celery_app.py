import uuid

from celery import Celery

from app.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("principal_activity", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="app.tasks.refresh_principal_activity")
def refresh_principal_activity_task(
    principal_ids: list[str] | None = None,
    trigger: str = "notification",
    correlation_id: str | None = None,
) -> dict:
    from app.principal_activity.service import principal_activity_refresh_service

    token = set_correlation_id(correlation_id)
    session = SessionLocal()
    try:
        parsed = [uuid.UUID(value) for value in principal_ids] if principal_ids is not None else None
        principal_activity_refresh_service.enqueue(parsed)
        reports = principal_activity_refresh_service.drain(session, trigger=trigger)
        return {"runs": [report.model_dump(mode="json") for report in reports]}
    finally:
        session.close()
        reset_correlation_id(token)
