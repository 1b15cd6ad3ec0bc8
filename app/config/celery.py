"""
Celery configuration for the Django application.

Celery runs the money-moving background work:
- settlement_scheduler_tick: every minute, triggers the daily settlement batch
- run_subscription_renewals: daily subscription billing with retries
- send_subscription_reminders: daily advance-notice reminders

Schedules live in the database (django-celery-beat DatabaseScheduler) and
are installed by payments data migrations. Redis is both the message broker
and result backend. Tasks are auto-discovered from all installed Django apps.

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Celery looks for a tasks.py module in each installed app
app.autodiscover_tasks()
