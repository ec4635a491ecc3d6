"""
REST API module for the CRM data coordinator.
Exposes entity lists and the dashboard over HTTP.
"""

from .routes import router, create_api_app

__all__ = ["router", "create_api_app"]
