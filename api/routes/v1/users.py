"""
api/routes/v1/users.py -- User management routes.

Routes:
  POST   /users           -- create user (global admin)
  GET    /users           -- list users (globalView / globalAdmin)
  GET    /users/me        -- the caller's own record
  GET    /users/{id}      -- read user (self or global tier)
  PUT    /users/{id}      -- update user (self or global admin; elevation fields global admin only)
  DELETE /users/{id}      -- delete user and its roles (self or global admin)

Every decision goes through auth/policy.py. Unknown ids raise NotFoundError,
which the app renders as the same bare 403 {} as a denial.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import DeleteResponse, OrgRoleEnum, UserCreate, UserResponse, UserUpdate
from auth.dependencies import get_identity
from auth.models import IdentityContext, User, UserAction
from auth.policy import require
from auth.store import UserStore
from cmdb.ownership import OwnershipResolver
from core.errors import NotFoundError, ValidationError

# Auth policy: every route requires an identity; per-route checks in auth/policy.py.
router = APIRouter(dependencies=[Depends(get_identity)])


def _load(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_user(user_id)
    if user is None:
        raise NotFoundError("user", user_id)
    return user


@limiter.limit("30/minute")
@router.post("/users", response_model=UserResponse)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: IdentityContext = Depends(get_identity),
) -> UserResponse:
    """Create a user directly. Global admin only.

    Self-registration and invites are a separate flow; this route is the
    privileged path.
    """
    require(ctx, UserAction.CREATE)
    user_store: UserStore = request.app.state.user_store
    resolver: OwnershipResolver = request.app.state.resolver
    if body.organization is not None:
        resolver.organization(body.organization)

    try:
        user_id = user_store.create_user(
            User(
                email=body.email,
                first_name=body.first_name,
                last_name=body.last_name,
                user_type=body.user_type.value,
            )
        )
    except IntegrityError as exc:
        raise ValidationError("A user with that email already exists.", code="conflict") from exc

    if body.organization is not None:
        user_store.attach_role(
            user_id,
            body.organization,
            role=OrgRoleEnum.admin.value if body.organization_admin else OrgRoleEnum.user.value,
            approved=body.approved,
            approved_by=ctx.user_id,
        )
    return UserResponse.from_user(_load(user_store, user_id))


@limiter.limit("60/minute")
@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, ctx: IdentityContext = Depends(get_identity)) -> list[UserResponse]:
    require(ctx, UserAction.LIST)
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.get("/users/me", response_model=UserResponse)
def me(request: Request, ctx: IdentityContext = Depends(get_identity)) -> UserResponse:
    """Return the caller's own record, roles included."""
    return UserResponse.from_user(_load(request.app.state.user_store, ctx.user_id))


@limiter.limit("60/minute")
@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, ctx: IdentityContext = Depends(get_identity)) -> UserResponse:
    target = request.app.state.resolver.user(user_id)
    require(ctx, UserAction.READ, target)
    return UserResponse.from_user(_load(request.app.state.user_store, target))


@limiter.limit("30/minute")
@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    ctx: IdentityContext = Depends(get_identity),
) -> UserResponse:
    """Update profile fields and optionally attach the user to an organization.

    Attaching creates exactly one Role per (user, organization) with
    role="user" and approved=false. Only a global admin may send approved=true
    (which also approves an existing pending role) or change user_type.
    Re-sending the user_type the user already has is not a change.
    """
    user_store: UserStore = request.app.state.user_store
    resolver: OwnershipResolver = request.app.state.resolver

    changes = body.model_dump(exclude_unset=True)
    target = resolver.user(user_id)
    if body.user_type is not None and body.user_type.value == _load(user_store, target).user_type:
        changes.pop("user_type")
    require(ctx, UserAction.WRITE, target, changes)
    if body.organization is not None:
        resolver.organization(body.organization)

    fields = {k: changes[k] for k in ("first_name", "last_name") if changes.get(k) is not None}
    if changes.get("user_type") is not None:
        fields["user_type"] = body.user_type.value
    if fields:
        user_store.update_user(target, **fields)

    if body.organization is not None:
        role, created = user_store.attach_role(
            target,
            body.organization,
            role=OrgRoleEnum.user.value,
            approved=bool(body.approved),
            approved_by=ctx.user_id,
        )
        if not created and body.approved and not role.approved:
            user_store.approve_role(role.id, ctx.user_id)

    return UserResponse.from_user(_load(user_store, target))


@limiter.limit("10/minute")
@router.delete("/users/{user_id}", response_model=DeleteResponse)
def delete_user(request: Request, user_id: int, ctx: IdentityContext = Depends(get_identity)) -> DeleteResponse:
    target = request.app.state.resolver.user(user_id)
    require(ctx, UserAction.DELETE, target)
    affected = request.app.state.user_store.delete_user(target)
    return DeleteResponse(affected=affected)
