"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-criteria
    gunicorn wsgi:app
"""

from capital_planner import create_app

app = create_app()
