from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from ecosystem_analytics.config import get_settings
from ecosystem_analytics.infrastructure.metrics import registry

settings = get_settings()
_broker = settings.redis_url or "redis://localhost:6379/0"

celery_app = Celery(
    "ecosystem_analytics",
    broker=_broker,
    backend=_broker,
    include=[
        "ecosystem_analytics.tasks.maintenance",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'], registry=registry)
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'], registry=registry)
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05,0.1,0.25,0.5,1,2,5,10,30,60), registry=registry)

_task_start_times = {}

@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()

@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()

# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "reconcile-pending-events-every-5m": {
        "task": "ecosystem_analytics.tasks.maintenance.reconcile_pending_events",
        "schedule": 300.0,
    },
    "expire-stale-referrals-daily": {
        "task": "ecosystem_analytics.tasks.maintenance.expire_stale_referrals",
        "schedule": 86400.0,
    },
}
