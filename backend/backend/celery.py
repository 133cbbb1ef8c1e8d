import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Billing tasks run on their own queue; everything else falls through to default.
app.conf.task_routes = {
    "billing.tasks.run_billing_job": {"queue": "billing"},
    "billing.tasks.run_scheduled_billing_jobs": {"queue": "billing"},
    "billing.tasks.process_payment_event_async": {"queue": "billing"},
    "billing.tasks.flush_usage_meter": {"queue": "billing"},
    "billing.tasks.cleanup_webhook_event_records": {"queue": "maintenance"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Monitoring settings
    worker_send_task_events=True,
    task_send_sent_event=True,

    # Queue settings
    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'billing': {
            'exchange': 'billing',
            'routing_key': 'billing',
        },
        'maintenance': {
            'exchange': 'maintenance',
            'routing_key': 'maintenance',
        },
    },

    task_default_priority=5,
    task_ignore_result=False,
)

app.conf.task_annotations = {
    'billing.tasks.run_scheduled_billing_jobs': {
        'time_limit': 1800,  # 30 min hard timeout, monthly billing walks every organization
        'soft_time_limit': 1500,
    },
    'billing.tasks.process_payment_event_async': {
        'rate_limit': '120/m',
        'time_limit': 120,
        'soft_time_limit': 90,
    },
}

# Celery Beat schedule configuration
app.conf.beat_schedule = {
    # Hour gates and period keys live in the scheduler.
    "billing_run_scheduled_jobs_hourly": {
        "task": "billing.tasks.run_scheduled_billing_jobs",
        "schedule": crontab(minute=5),
        "options": {"queue": "billing", "priority": 8},
    },
    "billing_flush_usage_meter_1min": {
        "task": "billing.tasks.flush_usage_meter",
        "schedule": crontab(minute="*"),
        "options": {"queue": "billing"},
    },
    "billing_cleanup_webhook_records_daily": {
        "task": "billing.tasks.cleanup_webhook_event_records",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "maintenance"},
    },
}
