"""
Domain utilities for the Gateway Service.

Holds the API key gateway that authenticates /v1 callers, checks tier
capabilities and enforces quotas before any handler runs.
"""

from .api_key_gateway import ApiKeyGateway, AuthFailure, AuthSuccess

__all__ = [
    "ApiKeyGateway",
    "AuthFailure",
    "AuthSuccess",
]
