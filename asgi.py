"""
asgi.py -- ASGI entry point for running crmctl under an external server.

Run with:  uvicorn asgi:app --reload

Settings are loaded on import; a missing secret key outside debug mode
fails here, before the server binds.
"""

from api.main import create_app

app = create_app()
