"""Web layer for the notetriage review API.

Provides a FastAPI application with JSON routes for re-classification,
review actions, baseline queries and promotion notifications.

Usage:
    from notetriage.web import create_app

    app = create_app()
"""

from notetriage.web.app import create_app

__all__ = ["create_app"]
