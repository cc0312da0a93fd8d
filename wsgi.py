"""
Application entry point for the ``flask`` CLI and WSGI servers.

Usage:
    FLASK_APP=wsgi flask recompute-statuses 42
"""

from app import create_app

app = create_app()
