"""
WSGI config for the escrow and settlement service.

Exposes the WSGI callable as a module-level variable named `application`
for gunicorn/uwsgi deployments.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
