# trust_monitor/tasks/celery_app.py
"""
Worker/beat entry point:

    celery -A trust_monitor.tasks.celery_app:celery worker
    celery -A trust_monitor.tasks.celery_app:celery beat

Importing this module builds a Flask app, so only Celery processes import it.
"""
import logging
import os

from celery import Celery
from celery.schedules import crontab

logger = logging.getLogger(__name__)

TASK_MODULES = ["trust_monitor.tasks.monitor_tasks"]


def beat_schedule(driver: str, interval_seconds: float) -> dict:
    schedule = {
        "purge-expired-audit-logs": {
            "task": "monitor.purge_expired_logs",
            "schedule": crontab(hour=3, minute=0),  # 3 AM UTC daily
        },
    }
    # With MONITOR_DRIVER=celery, beat replaces the in-process thread
    if driver == "celery":
        schedule["monitor-tick"] = {
            "task": "monitor.cycle",
            "schedule": float(interval_seconds),
            "options": {"expires": float(interval_seconds)},  # late ticks do not pile up
        }
    return schedule


def make_celery(broker_url: str = None, result_backend: str = None) -> Celery:
    broker_url = broker_url or os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
    result_backend = result_backend or os.getenv("CELERY_RESULT_BACKEND", broker_url)

    app = Celery("trust_monitor", broker=broker_url, backend=result_backend, include=TASK_MODULES)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=os.getenv("TZ", "UTC"),
        enable_utc=True,
        worker_prefetch_multiplier=1,
        beat_schedule=beat_schedule(
            os.getenv("MONITOR_DRIVER", "thread"),
            os.getenv("AUDIT_INTERVAL_SECONDS", "30"),
        ),
    )
    return app


def bind_flask(celery_app: Celery, flask_app) -> Celery:
    """Run every task inside the Flask app context and take broker settings from its config."""
    cfg = flask_app.config
    celery_app.conf.broker_url = cfg.get("CELERY_BROKER_URL") or celery_app.conf.broker_url
    celery_app.conf.result_backend = cfg.get("CELERY_RESULT_BACKEND") or celery_app.conf.broker_url
    celery_app.conf.beat_schedule = beat_schedule(
        cfg.get("MONITOR_DRIVER", "thread"), cfg.get("MONITOR_INTERVAL_SECONDS", 30)
    )

    TaskBase = celery_app.Task

    class ContextTask(TaskBase):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return TaskBase.__call__(self, *args, **kwargs)

    celery_app.Task = ContextTask
    celery_app.set_default()
    logger.info("Celery bound to Flask app (driver=%s)", cfg.get("MONITOR_DRIVER"))
    return celery_app


def _flask_app():
    from trust_monitor import create_app
    return create_app(os.getenv("FLASK_ENV", "production"))


celery = make_celery()
flask_app = _flask_app()
bind_flask(celery, flask_app)
