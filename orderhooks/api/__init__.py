"""HTTP management API for the webhook engine.

This module contains:
- Webhook subscription management endpoints
- Delivery history and statistics endpoints
- The application factory
"""

from orderhooks.api.routes import ErrorResponse, app, create_app
from orderhooks.api.webhooks import router as webhooks_router

__all__ = [
    "ErrorResponse",
    "app",
    "create_app",
    "webhooks_router",
]
