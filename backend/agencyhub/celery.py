import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'agencyhub.settings')

app = Celery('agencyhub')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration – token economy jobs run on the billing queue
app.conf.task_routes = {
    "billing.tasks.run_period_rollovers": {"queue": "billing"},
    "billing.tasks.expire_trials": {"queue": "billing"},
    "billing.tasks.submit_billing_charge": {"queue": "billing"},
    "billing.tasks.submit_pending_billing_charges": {"queue": "billing"},
    "billing.tasks.verify_token_ledgers": {"queue": "maintenance"},

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
    task_store_errors_even_if_ignored=True,
)

app.conf.task_annotations = {
    'billing.tasks.submit_billing_charge': {
        'rate_limit': '120/m',
        'max_retries': 3,
        'default_retry_delay': 60,
    },
    'billing.tasks.verify_token_ledgers': {
        'time_limit': 1800,
        'soft_time_limit': 1500,
    },
}

# Celery Beat schedule configuration
app.conf.beat_schedule = {
    "token_period_rollovers_hourly": {
        "task": "billing.tasks.run_period_rollovers",
        "schedule": crontab(minute=5),
        "options": {"queue": "billing", "priority": 8},
    },
    "token_trial_expiry_daily": {
        "task": "billing.tasks.expire_trials",
        "schedule": crontab(hour=0, minute=15),
        "options": {"queue": "billing"},
    },
    "billing_charge_submission_15min": {
        "task": "billing.tasks.submit_pending_billing_charges",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "billing"},
    },
    "token_ledger_verification_daily": {
        "task": "billing.tasks.verify_token_ledgers",
        "schedule": crontab(hour=3, minute=0),
        "options": {"queue": "maintenance"},
    },
}
