"""
Core views providing infrastructure endpoints.
"""

from django.conf import settings
from django.db import connection
from django.http import JsonResponse


def health_check(request):
    """
    Health check endpoint for load balancers and orchestration.

    Returns 200 when the database answers, 503 otherwise. The
    settlement and transfer toggles are reported so operators can see
    at a glance which money-moving features are live.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "settlement_enabled": settings.SETTLEMENT_ENABLED,
        "transfer_enabled": settings.TRANSFER_ENABLED,
    }

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JsonResponse(health_status, status=status_code)
