"""
Core views providing infrastructure endpoints and API error rendering.

This module contains views that are not part of the business domain but are
essential for application infrastructure:
- health_check: liveness/readiness probe
- api_exception_handler: DRF exception handler rendering application errors
  as ``{kind, message, error_code, details}``
"""

import logging

from django.core.cache import cache
from django.db import connection
from django.http import JsonResponse
from rest_framework.response import Response
from rest_framework.views import exception_handler

from core.exceptions import BaseApplicationError

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    Returns:
        JsonResponse with status and component health. 200 when the
        database answers, 503 otherwise. Cache failures are reported but
        do not fail the check.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        logger.exception("Health check database probe failed")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        cache.set("health_check", "ok", timeout=1)
        health_status["cache"] = (
            "connected" if cache.get("health_check") == "ok" else "disconnected"
        )
    except Exception:
        logger.warning("Health check cache probe failed", exc_info=True)
        health_status["cache"] = "disconnected"

    return JsonResponse(health_status, status=200 if is_healthy else 503)


def api_exception_handler(exc, context):
    """
    Render application errors raised from DRF views.

    BaseApplicationError subclasses carry their own HTTP status and are
    rendered with ``to_dict()``. Everything else falls through to DRF's
    default handler.
    """
    if isinstance(exc, BaseApplicationError):
        view = context.get("view")
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "Application error in %s: %s",
            view.__class__.__name__ if view else "unknown view",
            exc,
            extra={"error_code": exc.error_code, "kind": exc.kind},
        )
        return Response(exc.to_dict(), status=exc.status_code)

    return exception_handler(exc, context)
