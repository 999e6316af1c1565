"""API key based caller identity.

Authentication itself belongs to an external collaborator; the service only
needs to know which owner a request acts for. Each configured API key maps
to exactly one owner id.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from ..config import Settings, get_settings

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_request_settings(request: Request) -> Settings:
    """Settings the running app was created with."""

    return getattr(request.app.state, "settings", None) or get_settings()


def resolve_owner(api_key: str, settings: Settings) -> Optional[str]:
    for known_key, owner_id in settings.api_keys.items():
        if hmac.compare_digest(known_key.encode("utf-8"), api_key.encode("utf-8")):
            return owner_id
    return None


def get_current_owner(
    api_key: Optional[str] = Security(_api_key_header),
    settings: Settings = Depends(get_request_settings),
) -> str:
    """Validate the API key and return the owner id it belongs to."""

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing API key")

    owner_id = resolve_owner(api_key, settings)
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return owner_id


__all__ = ["get_current_owner", "get_request_settings", "resolve_owner"]
