"""
auth/models.py -- Domain dataclasses and enums for identity and authorization.

Pattern: Data class (pure data containers). Mirrors cmdb/models.py --
dataclasses own domain shape; the policy module, stores and routes do the work.

Action enums form the closed set of things a caller can ask to do. The
Authorization Engine (auth/policy.py) dispatches over their union, so a new
action is a new enum member, never an ad hoc string comparison at a call site.

Layer rule: no imports from api/ or cmdb/.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Union


class GlobalTier(str, Enum):
    """Privilege level that applies independently of organization membership."""

    STANDARD = "standard"
    GLOBAL_VIEW = "globalView"
    GLOBAL_ADMIN = "globalAdmin"


class OrgRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class UserAction(str, Enum):
    CREATE = "user:create"
    LIST = "user:list"
    READ = "user:read"
    WRITE = "user:write"
    DELETE = "user:delete"


class OrganizationAction(str, Enum):
    CREATE = "organization:create"
    READ = "organization:read"
    UPDATE = "organization:update"
    MANAGE_ROLES = "organization:manage_roles"
    DELETE = "organization:delete"


class DomainAction(str, Enum):
    READ = "domain:read"
    REVIEW = "domain:review"


class VulnerabilityAction(str, Enum):
    READ = "vulnerability:read"
    WRITE = "vulnerability:write"


Action = Union[UserAction, OrganizationAction, DomainAction, VulnerabilityAction]


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------


@dataclass
class Role:
    """Binds a user to an organization.

    At most one Role exists per (user_id, organization_id) pair. Roles are
    created unapproved by any non-privileged path; approved_by records the
    user id of the org admin or global admin who confirmed it.
    """

    user_id: int
    organization_id: int
    role: str = OrgRole.USER.value
    approved: bool = False
    approved_by: int | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class User:
    """A person with access to the console.

    email is unique and stored lower-case. user_type is the global tier value
    ("standard", "globalView", "globalAdmin"). roles is filled in by the store
    when the user is loaded.
    """

    email: str
    first_name: str = ""
    last_name: str = ""
    user_type: str = GlobalTier.STANDARD.value
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    roles: list[Role] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Per-request identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Membership:
    role: OrgRole
    approved: bool

    @property
    def is_approved_admin(self) -> bool:
        return self.approved and self.role is OrgRole.ADMIN


@dataclass(frozen=True)
class IdentityContext:
    """The authenticated principal for one request.

    Built once by auth/context.build_identity_context() and never mutated.
    memberships maps organization id -> Membership and is wrapped in a
    read-only proxy.
    """

    user_id: int
    global_tier: GlobalTier = GlobalTier.STANDARD
    memberships: Mapping[int, Membership] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def organization_ids(self) -> list[int]:
        return sorted(self.memberships)

    @property
    def has_global_view(self) -> bool:
        return self.global_tier in (GlobalTier.GLOBAL_VIEW, GlobalTier.GLOBAL_ADMIN)

    @property
    def is_global_admin(self) -> bool:
        return self.global_tier is GlobalTier.GLOBAL_ADMIN
