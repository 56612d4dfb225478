"""
WSGI entrypoint for the Bookspot project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "bookspot.settings")

application = get_wsgi_application()
