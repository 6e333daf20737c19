from __future__ import annotations

from fastapi import Request

from .errors import Unauthorized

OWNER_HEADER = "X-Owner-Id"


def get_owner_id(request: Request) -> str:
    """Owner identifier set by the authenticating proxy in front of the API."""
    owner_id = (request.headers.get(OWNER_HEADER) or "").strip()
    if not owner_id:
        raise Unauthorized()
    return owner_id
