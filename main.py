"""ASGI entry point for the status API.

    uvicorn main:app --host 127.0.0.1 --port 8000
"""
from ukfleet.api import create_app

app = create_app()
