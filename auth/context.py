"""
auth/context.py -- Builds the per-request IdentityContext.

The context is assembled once from verified token claims and the stored user
record, then handed to every authorization check for the rest of the request.
Nothing here is cached between requests.

Inline overrides (token "user_type" / "roles" claims) replace the stored tier
and memberships only when allow_overrides is True. The referenced user must
still exist either way.
"""

from __future__ import annotations

from types import MappingProxyType

from auth.models import GlobalTier, IdentityContext, Membership, OrgRole, Role
from auth.store import UserStore
from auth.tokens import TokenClaims
from core.errors import AuthenticationError


def memberships_from_roles(roles: list[Role]) -> dict[int, Membership]:
    return {r.organization_id: Membership(role=OrgRole(r.role), approved=r.approved) for r in roles}


def build_identity_context(claims: TokenClaims, user_store: UserStore, allow_overrides: bool = False) -> IdentityContext:
    """Resolve claims into an immutable IdentityContext.

    Raises AuthenticationError if the user no longer exists or carries an
    unknown user_type.
    """
    user = user_store.get_user(claims.user_id)
    if user is None:
        raise AuthenticationError(f"user {claims.user_id} does not exist")

    try:
        tier = GlobalTier(user.user_type)
    except ValueError as exc:
        raise AuthenticationError(f"user {user.id} has unknown user_type") from exc
    memberships = memberships_from_roles(user.roles)

    if allow_overrides:
        if claims.tier_override is not None:
            tier = claims.tier_override
        if claims.role_overrides is not None:
            memberships = dict(claims.role_overrides)

    return IdentityContext(
        user_id=user.id,
        global_tier=tier,
        memberships=MappingProxyType(memberships),
    )
