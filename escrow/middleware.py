"""
Caller identity and admin dependencies.

The escrow API does not authenticate users itself; wallet connection is
out of scope. The calling account arrives in the X-Account header from the
presentation layer in front of it.
"""

import os
from typing import Annotated

from fastapi import Depends, Request

from escrow.api_errors import APIError


ADMIN_KEY = os.environ.get("ESCROW_ADMIN_KEY", "")


def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def require_caller(request: Request) -> str:
    """Require the X-Account header. Returns the calling account."""
    account = request.headers.get("x-account", "").strip()
    if not account:
        raise APIError(401, "caller_required", "X-Account header required")
    return account


async def require_admin(request: Request) -> None:
    """Require the admin API key."""
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "ESCROW_ADMIN_KEY not configured")
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")
    if token != ADMIN_KEY:
        raise APIError(403, "admin_required", "Admin API key required")


Caller = Annotated[str, Depends(require_caller)]
AdminDep = Annotated[None, Depends(require_admin)]
