"""
Add celery-beat schedules for settlement, subscription renewal and
webhook retry.

The settlement task ticks every minute; the scheduler decides whether
the daily window has been reached, so the configured settlement hour
is not baked into the beat schedule.
"""

from django.db import migrations

INTERVAL_TASKS = [
    {
        "name": "Settlement Scheduler Tick",
        "task": "payments.tasks.settlement_scheduler_tick",
        "every": 1,
        "description": "Starts the daily settlement batch once its trigger window is reached.",
    },
    {
        "name": "Retry Failed Gateway Webhooks",
        "task": "payments.tasks.retry_failed_webhooks",
        "every": 5,
        "description": "Re-queues failed gateway webhook events that have attempts left.",
    },
]

CRONTAB_TASKS = [
    {
        "name": "Run Subscription Renewals",
        "task": "payments.tasks.run_subscription_renewals",
        "minute": "30",
        "hour": "0",
        "description": "Charges due subscriptions and retries failed renewals.",
    },
    {
        "name": "Send Subscription Reminders",
        "task": "payments.tasks.send_subscription_reminders",
        "minute": "0",
        "hour": "9",
        "description": "Notifies users whose subscription renews soon.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in INTERVAL_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )

    for entry in CRONTAB_TASKS:
        schedule, _ = CrontabSchedule.objects.get_or_create(
            minute=entry["minute"],
            hour=entry["hour"],
            day_of_week="*",
            day_of_month="*",
            month_of_year="*",
            timezone="UTC",
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "crontab": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    names = [entry["name"] for entry in INTERVAL_TASKS + CRONTAB_TASKS]
    PeriodicTask.objects.filter(name__in=names).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
