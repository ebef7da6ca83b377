"""
auth/policy.py -- Authorization Engine.

Every predicate here is a pure function of an IdentityContext and a few
target facts (ids resolved by cmdb/ownership.py). No I/O, no store access,
no mutation -- safe to call from any number of concurrent requests.

Rules:
  - Deny is the default. Each predicate is an explicit allow-list.
  - Global-tier bypasses never require membership, and membership-based
    allows never require a global tier. The two are OR-ed, never AND-ed.
  - Callers turn False into AuthorizationError via authorize(). The HTTP
    layer renders that as a bare 403 {} so a denial looks exactly like a
    missing resource.

Layer rule: no imports from api/ or cmdb/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from auth.models import (
    Action,
    DomainAction,
    GlobalTier,
    IdentityContext,
    OrganizationAction,
    UserAction,
    VulnerabilityAction,
)
from core.errors import AuthorizationError

logger = logging.getLogger("vulnconsole.auth")

# Payload keys that change privilege. A self-write carrying any of these is
# refused unless the caller is a global admin.
_ELEVATION_FIELDS = ("user_type",)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def _is_member(ctx: IdentityContext, org_id: int) -> bool:
    return org_id in ctx.memberships


def _is_approved_member(ctx: IdentityContext, org_id: int) -> bool:
    membership = ctx.memberships.get(org_id)
    return membership is not None and membership.approved


def _is_approved_admin(ctx: IdentityContext, org_id: int) -> bool:
    membership = ctx.memberships.get(org_id)
    return membership is not None and membership.is_approved_admin


def _elevates(changes: Optional[Mapping[str, Any]]) -> bool:
    if not changes:
        return False
    if any(changes.get(key) is not None for key in _ELEVATION_FIELDS):
        return True
    return changes.get("approved") is True


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def can_create_user(ctx: IdentityContext) -> bool:
    return ctx.global_tier is GlobalTier.GLOBAL_ADMIN


def can_list_users(ctx: IdentityContext) -> bool:
    return ctx.has_global_view


def can_read_user(ctx: IdentityContext, target_user_id: int) -> bool:
    return ctx.user_id == target_user_id or ctx.has_global_view


def can_write_user(
    ctx: IdentityContext,
    target_user_id: int,
    changes: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Self or global admin may write a user.

    A payload that changes user_type or sets approved=True is refused for
    everyone except a global admin, including on the caller's own record.
    globalView is read-only and gets no write bypass.
    """
    if ctx.is_global_admin:
        return True
    if _elevates(changes):
        return False
    return ctx.user_id == target_user_id


def can_delete_user(ctx: IdentityContext, target_user_id: int) -> bool:
    return can_write_user(ctx, target_user_id)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


def can_create_organization(ctx: IdentityContext) -> bool:
    return ctx.is_global_admin


def can_delete_organization(ctx: IdentityContext) -> bool:
    return ctx.is_global_admin


def can_act_on_organization(ctx: IdentityContext, org_id: int, action: OrganizationAction) -> bool:
    if action is OrganizationAction.READ:
        return ctx.has_global_view or _is_member(ctx, org_id)
    if action in (OrganizationAction.UPDATE, OrganizationAction.MANAGE_ROLES):
        return ctx.is_global_admin or _is_approved_admin(ctx, org_id)
    if action is OrganizationAction.CREATE:
        return can_create_organization(ctx)
    if action is OrganizationAction.DELETE:
        return can_delete_organization(ctx)
    return False


# ---------------------------------------------------------------------------
# Domains and vulnerabilities
# ---------------------------------------------------------------------------


def can_act_on_domain(ctx: IdentityContext, domain_org_id: int, action: DomainAction) -> bool:
    """read: any membership (approved or not) or a global tier.
    review: approved admin of the owning org, or global admin.
    """
    if action is DomainAction.READ:
        return ctx.has_global_view or _is_member(ctx, domain_org_id)
    if action is DomainAction.REVIEW:
        return ctx.is_global_admin or _is_approved_admin(ctx, domain_org_id)
    return False


def can_act_on_vulnerability(ctx: IdentityContext, vuln_org_id: int, action: VulnerabilityAction) -> bool:
    """read: same rule as domain read.
    write: approved membership (user or admin) in the owning org, or global admin.
    """
    if action is VulnerabilityAction.READ:
        return ctx.has_global_view or _is_member(ctx, vuln_org_id)
    if action is VulnerabilityAction.WRITE:
        return ctx.is_global_admin or _is_approved_member(ctx, vuln_org_id)
    return False


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def is_allowed(
    ctx: IdentityContext,
    action: Action,
    target: Optional[int] = None,
    changes: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Single entry point over the Action union.

    target is the target user id for UserAction and the owning organization
    id for every other family. Raises TypeError for anything that is not an
    Action member so a typo cannot silently fall through to "deny".
    """
    if isinstance(action, UserAction):
        if action is UserAction.CREATE:
            return can_create_user(ctx)
        if action is UserAction.LIST:
            return can_list_users(ctx)
        if target is None:
            return False
        if action is UserAction.READ:
            return can_read_user(ctx, target)
        if action is UserAction.WRITE:
            return can_write_user(ctx, target, changes)
        return can_delete_user(ctx, target)
    if isinstance(action, OrganizationAction):
        if action in (OrganizationAction.CREATE, OrganizationAction.DELETE):
            return can_act_on_organization(ctx, target or 0, action)
        return target is not None and can_act_on_organization(ctx, target, action)
    if isinstance(action, DomainAction):
        return target is not None and can_act_on_domain(ctx, target, action)
    if isinstance(action, VulnerabilityAction):
        return target is not None and can_act_on_vulnerability(ctx, target, action)
    raise TypeError(f"Unknown action: {action!r}")


def authorize(allowed: bool, ctx: IdentityContext, action: Action, target: Optional[int] = None) -> None:
    """Raise AuthorizationError when allowed is False.

    The denial is logged with the caller and action. Nothing about the reason
    reaches the response.
    """
    if allowed:
        return
    logger.info("Denied %s for user %s (target=%s)", action.value, ctx.user_id, target)
    raise AuthorizationError(f"{action.value} denied")


def require(
    ctx: IdentityContext,
    action: Action,
    target: Optional[int] = None,
    changes: Optional[Mapping[str, Any]] = None,
) -> None:
    """Shorthand for authorize(is_allowed(...))."""
    authorize(is_allowed(ctx, action, target, changes), ctx, action, target)
