"""Security utilities for the Stripe metrics service."""

from .api_keys import get_current_owner, get_request_settings, resolve_owner

__all__ = ["get_current_owner", "get_request_settings", "resolve_owner"]
