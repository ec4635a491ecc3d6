"""
CRM data coordinator: cached, aggregated and periodically refreshed entity views.
"""

__version__ = "1.0.0"
