"""
auth/tokens.py -- JWT issue and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id and expiry. verify_token() raises AuthenticationError on any
       failure -- the HTTP layer turns that into a 401.

  Inline overrides: a token may carry "user_type" and "roles" claims. They
       are parsed here but only honoured by auth/context.py when
       Settings.allow_identity_overrides is on (test harness). The claims are
       validated strictly either way so a malformed override is a 401, never a
       silent fallback.

  SECRET_KEY: sourced from core.config.get_settings(). Settings refuses to
       start in production without one.

Layer rule: no imports from api/ or cmdb/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from auth.models import GlobalTier, Membership, OrgRole
from core.config import get_settings
from core.errors import AuthenticationError

logger = logging.getLogger("vulnconsole.auth")

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenClaims:
    """Verified token payload.

    tier_override / role_overrides are None when the token does not carry
    them. role_overrides maps organization id -> Membership.
    """

    user_id: int
    tier_override: Optional[GlobalTier] = None
    role_overrides: Optional[dict[int, Membership]] = field(default=None, hash=False)


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    user_type: Optional[str] = None,
    roles: Optional[list[dict]] = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed JWT for user_id.

    Args:
        user_id:        Numeric user ID stored in the DB.
        user_type:      Optional inline tier override (test harness only).
        roles:          Optional inline memberships, each
                        {"org": <id>, "role": "user"|"admin", "approved": bool}.
        expire_seconds: Token lifetime. 0 uses Settings.token_expire_seconds.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    payload: dict = {
        "sub": str(user_id),
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    if user_type is not None:
        payload["user_type"] = user_type
    if roles is not None:
        payload["roles"] = roles
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _parse_roles(raw) -> dict[int, Membership]:
    if not isinstance(raw, list):
        raise AuthenticationError("roles claim must be a list")
    memberships: dict[int, Membership] = {}
    for entry in raw:
        try:
            org_id = int(entry["org"])
            role = OrgRole(entry.get("role", OrgRole.USER.value))
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthenticationError("malformed roles claim") from exc
        # Inline roles default to approved, matching how the harness models
        # an established member.
        memberships[org_id] = Membership(role=role, approved=bool(entry.get("approved", True)))
    return memberships


def verify_token(raw_token: str) -> TokenClaims:
    """Decode and verify a JWT, returning its claims.

    Raises AuthenticationError for a missing, expired, tampered or malformed
    token.
    """
    if not raw_token:
        raise AuthenticationError("missing token")
    try:
        payload = jwt.decode(raw_token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError as exc:
        raise AuthenticationError("invalid token") from exc

    try:
        user_id = int(payload["user_id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError("token has no user_id") from exc

    tier_override: Optional[GlobalTier] = None
    if payload.get("user_type") is not None:
        try:
            tier_override = GlobalTier(payload["user_type"])
        except ValueError as exc:
            raise AuthenticationError("unknown user_type claim") from exc

    role_overrides = _parse_roles(payload["roles"]) if "roles" in payload else None
    return TokenClaims(user_id=user_id, tier_override=tier_override, role_overrides=role_overrides)


def extract_bearer(header_value: str) -> str:
    """Return the token from an Authorization header.

    Accepts both "Bearer <token>" and a bare token.
    """
    value = header_value.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value
