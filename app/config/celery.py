"""
Celery configuration for the Django application.

Billing relies on Celery for:
- Processing stored Stripe webhook events outside the request cycle
- Periodic sweeps (stale checkouts, failed webhooks, subscription sync,
  commission maturity) scheduled through django-celery-beat

Redis is both the message broker and result backend. Tasks are
auto-discovered from every installed Django app's tasks.py.

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
