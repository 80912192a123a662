"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflows
    flask --app wsgi run-outbox-worker
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
