"""
Add celery-beat schedules for billing maintenance tasks.

Creates the periodic tasks that re-queue failed webhooks, settle stale
checkouts, confirm matured affiliate commissions and keep subscriptions
in sync with Stripe.
"""

from django.db import migrations

# (name, task, every, period, description)
INTERVAL_TASKS = [
    (
        "Retry Failed Billing Webhooks",
        "billing.tasks.retry_failed_webhooks",
        5,
        "minutes",
        "Re-queues failed and never-queued Stripe webhook events.",
    ),
    (
        "Reset Stuck Billing Webhooks",
        "billing.tasks.cleanup_stuck_webhooks",
        10,
        "minutes",
        "Marks webhook events stuck in processing as failed so they are retried.",
    ),
    (
        "Reconcile Stale Checkouts",
        "billing.tasks.reconcile_stale_checkouts",
        15,
        "minutes",
        "Settles pending checkouts whose verify and webhook signals never arrived.",
    ),
    (
        "Sync Subscriptions",
        "billing.tasks.sync_subscriptions",
        1,
        "hours",
        "Demotes subscriptions past the grace period and pulls state from Stripe.",
    ),
    (
        "Confirm Matured Commissions",
        "billing.tasks.confirm_matured_commissions",
        1,
        "days",
        "Confirms pending affiliate commissions after the hold period.",
    ),
    (
        "Cleanup Old Billing Webhooks",
        "billing.tasks.cleanup_old_webhooks",
        1,
        "days",
        "Deletes processed webhook events older than 90 days.",
    ),
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for billing maintenance."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for name, task, every, period, description in INTERVAL_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=every,
            period=period,
        )
        PeriodicTask.objects.get_or_create(
            name=name,
            defaults={
                "task": task,
                "interval": schedule,
                "enabled": True,
                "description": description,
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[name for name, *_ in INTERVAL_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
