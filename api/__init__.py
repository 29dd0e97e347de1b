"""
HTTP API for the event fabric demo.

This package provides a single FastAPI application that exposes:
- A demo endpoint running order fulfillment saga scenarios
- Inspection endpoints for saga instances and dead letters
"""

from api.main import app

__all__ = ["app"]
