"""
API request and response models for VulnConsole REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
cmdb/models.py, which own the internal domain representation. Route handlers
map between the two with the from_* factory methods colocated here.

Separation of concerns: auth/ and cmdb/ models = domain truth; api/ models =
API contract.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Role, User
from cmdb.models import Domain, Organization, SubstateChange, Vulnerability

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class UserTypeEnum(str, Enum):
    standard = "standard"
    globalView = "globalView"
    globalAdmin = "globalAdmin"


class OrgRoleEnum(str, Enum):
    user = "user"
    admin = "admin"


class SortOrderEnum(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 400/401/429/5xx responses.

    403 responses are deliberately NOT wrapped -- they are a bare {}.
    """

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class DeleteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    affected: int


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    organization_id: int
    role: str
    approved: bool
    approved_by: Optional[int] = None
    created_at: str = ""

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            user_id=role.user_id,
            organization_id=role.organization_id,
            role=role.role,
            approved=role.approved,
            approved_by=role.approved_by,
            created_at=role.created_at or "",
        )


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    user_type: str
    created_at: str
    updated_at: str
    roles: list[RoleResponse] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            user_type=user.user_type,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
            roles=[RoleResponse.from_role(r) for r in user.roles],
        )


class UserCreate(BaseModel):
    """Request body for POST /users (global admin only).

    organization, when set, attaches the new user to that org. The role is
    created unapproved unless approved=true is sent explicitly.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    first_name: str = Field(default="", max_length=255)
    last_name: str = Field(default="", max_length=255)
    user_type: UserTypeEnum = UserTypeEnum.standard
    organization: Optional[int] = None
    organization_admin: bool = False
    approved: bool = False

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class UserUpdate(BaseModel):
    """Request body for PUT /users/{id}.

    user_type and approved are elevation fields: only a global admin may
    send them. organization attaches the user to an org with an unapproved
    "user" role (no-op if a role already exists).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    user_type: Optional[UserTypeEnum] = None
    organization: Optional[int] = None
    approved: Optional[bool] = None


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrganizationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    root_domains: list[str] = Field(default_factory=list, max_length=100)
    ip_blocks: list[str] = Field(default_factory=list, max_length=100)
    is_passive: bool = False


class OrganizationUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    root_domains: Optional[list[str]] = Field(default=None, max_length=100)
    ip_blocks: Optional[list[str]] = Field(default=None, max_length=100)
    is_passive: Optional[bool] = None


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    root_domains: list[str]
    ip_blocks: list[str]
    is_passive: bool
    created_at: str
    updated_at: str
    roles: Optional[list[RoleResponse]] = None

    @classmethod
    def from_org(cls, org: Organization, roles: Optional[list[Role]] = None) -> "OrganizationResponse":
        return cls(
            id=org.id,
            name=org.name,
            root_domains=org.root_domains,
            ip_blocks=org.ip_blocks,
            is_passive=org.is_passive,
            created_at=org.created_at,
            updated_at=org.updated_at,
            roles=[RoleResponse.from_role(r) for r in roles] if roles is not None else None,
        )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Request body for POST /domain/search and /vulnerabilities/search.

    page_size = -1 returns every matching row (export). Scoping still applies.
    """

    model_config = ConfigDict(populate_by_name=True)

    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(default=None, alias="pageSize")
    sort: Optional[str] = Field(default=None, max_length=50)
    order: SortOrderEnum = SortOrderEnum.ASC
    filters: dict[str, Union[int, str, list[int], None]] = Field(default_factory=dict)


class DomainResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    name: str
    ip: Optional[str]
    status: str
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, domain: Domain) -> "DomainResponse":
        return cls(
            id=domain.id,
            organization_id=domain.organization_id,
            name=domain.name,
            ip=domain.ip,
            status=domain.status,
            created_at=domain.created_at,
            updated_at=domain.updated_at,
        )


class VulnerabilityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    domain_id: int
    domain_name: Optional[str] = None
    organization_id: Optional[int] = None
    title: str
    cve: Optional[str]
    cwe: Optional[str]
    cpe: Optional[str]
    description: str
    severity: str
    state: str
    substate: str
    created_at: str
    updated_at: str
    last_seen: Optional[str]

    @classmethod
    def from_vuln(cls, vuln: Vulnerability) -> "VulnerabilityResponse":
        return cls(
            id=vuln.id,
            domain_id=vuln.domain_id,
            domain_name=vuln.domain_name,
            organization_id=vuln.organization_id,
            title=vuln.title,
            cve=vuln.cve,
            cwe=vuln.cwe,
            cpe=vuln.cpe,
            description=vuln.description,
            severity=vuln.severity,
            state=vuln.state,
            substate=vuln.substate,
            created_at=vuln.created_at,
            updated_at=vuln.updated_at,
            last_seen=vuln.last_seen,
        )


class SearchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: list[Any]
    count: int
    page: int


# ---------------------------------------------------------------------------
# Lifecycle requests
# ---------------------------------------------------------------------------


class DomainReviewRequest(BaseModel):
    """Request body for POST /domain/update-status.

    page / page_size / filters describe the pending list the reviewer is
    looking at; the response carries that list refreshed after the review.
    """

    model_config = ConfigDict(populate_by_name=True)

    domain_ids: list[int] = Field(min_length=1, max_length=500)
    status: str = Field(max_length=20)
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(default=None, alias="pageSize")
    filters: dict[str, Union[int, str, list[int], None]] = Field(default_factory=dict)


class DomainReviewResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    updated: list[int]
    skipped: list[int]
    pending: SearchResponse


class VulnerabilityUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    substate: str = Field(max_length=30)


class SubstateChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_substate: str
    to_substate: str
    user_id: int
    changed_at: str

    @classmethod
    def from_change(cls, change: SubstateChange) -> "SubstateChangeResponse":
        return cls(
            from_substate=change.from_substate,
            to_substate=change.to_substate,
            user_id=change.user_id,
            changed_at=change.changed_at,
        )
