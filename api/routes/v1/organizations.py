"""
api/routes/v1/organizations.py -- Organization and membership routes.

Routes:
  POST   /organizations                              -- create (global admin)
  GET    /organizations                              -- list the caller can see
  GET    /organizations/{id}                         -- detail (members; roles for org admins)
  PUT    /organizations/{id}                         -- rename / edit (approved org admin or global admin)
  DELETE /organizations/{id}                         -- delete when nothing references it (global admin)
  POST   /organizations/{id}/roles/{role_id}/approve -- approve a pending membership
  DELETE /organizations/{id}/roles/{role_id}         -- remove a membership

Role approval is the only way a Role becomes approved after creation, and it
requires an approved admin of that organization or a global admin.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import (
    DeleteResponse,
    OrganizationCreate,
    OrganizationResponse,
    OrganizationUpdate,
    RoleResponse,
)
from auth.dependencies import get_identity
from auth.models import IdentityContext, OrganizationAction, Role
from auth.policy import is_allowed, require
from auth.store import UserStore
from cmdb.models import Organization, ResourceKind
from cmdb.search import search
from cmdb.store import UNBOUNDED_PAGE_SIZE, CMDBStore
from core.errors import InvalidTransitionError, NotFoundError

router = APIRouter(dependencies=[Depends(get_identity)])


def _load(cmdb: CMDBStore, org_id: int) -> Organization:
    org = cmdb.get_organization(org_id)
    if org is None:
        raise NotFoundError("organization", org_id)
    return org


def _role_in_org(user_store: UserStore, org_id: int, role_id: int) -> Role:
    role = user_store.get_role(role_id)
    if role is None or role.organization_id != org_id:
        raise NotFoundError("role", role_id)
    return role


@limiter.limit("10/minute")
@router.post("/organizations", response_model=OrganizationResponse)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    ctx: IdentityContext = Depends(get_identity),
) -> OrganizationResponse:
    require(ctx, OrganizationAction.CREATE)
    cmdb: CMDBStore = request.app.state.cmdb
    org_id = cmdb.create_organization(
        Organization(
            name=body.name,
            root_domains=body.root_domains,
            ip_blocks=body.ip_blocks,
            is_passive=body.is_passive,
        )
    )
    return OrganizationResponse.from_org(_load(cmdb, org_id))


@limiter.limit("60/minute")
@router.get("/organizations", response_model=list[OrganizationResponse])
def list_organizations(request: Request, ctx: IdentityContext = Depends(get_identity)) -> list[OrganizationResponse]:
    """Every organization for global tiers; the caller's own organizations otherwise."""
    result = search(
        request.app.state.cmdb,
        ResourceKind.ORGANIZATION,
        {},
        "name",
        "ASC",
        1,
        UNBOUNDED_PAGE_SIZE,
        ctx,
    )
    return [OrganizationResponse.from_org(o) for o in result.results]


@limiter.limit("60/minute")
@router.get("/organizations/{org_id}", response_model=OrganizationResponse)
def get_organization(request: Request, org_id: int, ctx: IdentityContext = Depends(get_identity)) -> OrganizationResponse:
    """Organization detail. Role lists are included only for callers who can manage them."""
    org_id = request.app.state.resolver.organization(org_id)
    require(ctx, OrganizationAction.READ, org_id)
    org = _load(request.app.state.cmdb, org_id)
    roles = None
    if is_allowed(ctx, OrganizationAction.MANAGE_ROLES, org_id):
        roles = request.app.state.user_store.list_roles_for_org(org_id)
    return OrganizationResponse.from_org(org, roles)


@limiter.limit("30/minute")
@router.put("/organizations/{org_id}", response_model=OrganizationResponse)
def update_organization(
    request: Request,
    org_id: int,
    body: OrganizationUpdate,
    ctx: IdentityContext = Depends(get_identity),
) -> OrganizationResponse:
    org_id = request.app.state.resolver.organization(org_id)
    require(ctx, OrganizationAction.UPDATE, org_id)
    cmdb: CMDBStore = request.app.state.cmdb
    fields = body.model_dump(exclude_none=True)
    if fields:
        cmdb.update_organization(org_id, **fields)
    return OrganizationResponse.from_org(_load(cmdb, org_id))


@limiter.limit("10/minute")
@router.delete("/organizations/{org_id}", response_model=DeleteResponse)
def delete_organization(request: Request, org_id: int, ctx: IdentityContext = Depends(get_identity)) -> DeleteResponse:
    """Delete an organization that no domain and no membership references."""
    org_id = request.app.state.resolver.organization(org_id)
    require(ctx, OrganizationAction.DELETE, org_id)
    cmdb: CMDBStore = request.app.state.cmdb
    user_store: UserStore = request.app.state.user_store
    if cmdb.count_domains_for_org(org_id) or user_store.count_roles_for_org(org_id):
        raise InvalidTransitionError(
            "organization_in_use",
            "Organization still owns domains or has members.",
        )
    affected = cmdb.delete_organization(org_id)
    if not affected:
        # A domain was ingested between the check and the delete.
        raise InvalidTransitionError("organization_in_use", "Organization still owns domains.")
    return DeleteResponse(affected=affected)


@limiter.limit("30/minute")
@router.post("/organizations/{org_id}/roles/{role_id}/approve", response_model=RoleResponse)
def approve_role(
    request: Request,
    org_id: int,
    role_id: int,
    ctx: IdentityContext = Depends(get_identity),
) -> RoleResponse:
    org_id = request.app.state.resolver.organization(org_id)
    require(ctx, OrganizationAction.MANAGE_ROLES, org_id)
    user_store: UserStore = request.app.state.user_store
    role = _role_in_org(user_store, org_id, role_id)
    if not role.approved:
        user_store.approve_role(role.id, ctx.user_id)
    return RoleResponse.from_role(_role_in_org(user_store, org_id, role_id))


@limiter.limit("30/minute")
@router.delete("/organizations/{org_id}/roles/{role_id}", response_model=DeleteResponse)
def remove_role(
    request: Request,
    org_id: int,
    role_id: int,
    ctx: IdentityContext = Depends(get_identity),
) -> DeleteResponse:
    org_id = request.app.state.resolver.organization(org_id)
    require(ctx, OrganizationAction.MANAGE_ROLES, org_id)
    user_store: UserStore = request.app.state.user_store
    role = _role_in_org(user_store, org_id, role_id)
    return DeleteResponse(affected=user_store.remove_role(role.id))
