"""
WSGI config for the Django application.

Provided for traditional deployment options (gunicorn, mod_wsgi). The
primary entry point is config.asgi.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
