"""
REST API module for TradeDesk.
"""

from .routes import router, create_api_app

__all__ = ["router", "create_api_app"]
