from celery import Celery
from celery.signals import worker_process_init

from flowapp.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "flow_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["flowapp.automation.tasks"],
)
celery_app.conf.beat_schedule = {
    "scan-due-flow-executions": {
        "task": "flowapp.automation.scan_due_executions",
        "schedule": float(settings.flow_resume_scan_interval_seconds),
    },
}


@worker_process_init.connect
def rebuild_trigger_registry(**_: object) -> None:
    from flowapp.automation.registry import trigger_registry
    from flowapp.core.database import SessionLocal
    from flowapp.logging import configure_logging

    configure_logging()
    session = SessionLocal()
    try:
        trigger_registry.reload(session)
    finally:
        session.close()
