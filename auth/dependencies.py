"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the web login flow.
  2. Authorization header -- "Bearer <token>" or a bare token.

Both converge on an IdentityContext via auth/context.build_identity_context().
get_identity() raises AuthenticationError (rendered as 401) on any failure.

Layer rule: no imports from cmdb/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.context import build_identity_context
from auth.models import IdentityContext
from auth.tokens import extract_bearer, verify_token
from core.config import get_settings


def _raw_token(request: Request) -> str:
    token = request.cookies.get("access_token", "")
    if not token:
        token = extract_bearer(request.headers.get("Authorization", ""))
    return token


def get_identity(request: Request) -> IdentityContext:
    """Require authentication and return the caller's IdentityContext.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(request: Request, ctx: IdentityContext = Depends(get_identity)): ...
    """
    claims = verify_token(_raw_token(request))
    return build_identity_context(
        claims,
        request.app.state.user_store,
        allow_overrides=get_settings().allow_identity_overrides,
    )
