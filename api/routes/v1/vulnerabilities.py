"""
api/routes/v1/vulnerabilities.py -- Vulnerability search and triage routes.

Routes:
  POST /vulnerabilities/search        -- scoped, paginated search (state/substate filters)
  GET  /vulnerabilities/{id}          -- finding detail with derived state
  PUT  /vulnerabilities/{id}          -- change substate
  GET  /vulnerabilities/{id}/history  -- substate change audit trail
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import (
    SearchRequest,
    SearchResponse,
    SubstateChangeResponse,
    VulnerabilityResponse,
    VulnerabilityUpdate,
)
from auth.dependencies import get_identity
from auth.models import IdentityContext, VulnerabilityAction
from auth.policy import require
from cmdb.models import ResourceKind
from cmdb.search import search
from cmdb.vuln_state import transition
from core.errors import NotFoundError

router = APIRouter(dependencies=[Depends(get_identity)])


@limiter.limit("60/minute")
@router.post("/vulnerabilities/search", response_model=SearchResponse)
def search_vulnerabilities(
    request: Request,
    body: SearchRequest,
    ctx: IdentityContext = Depends(get_identity),
) -> SearchResponse:
    result = search(
        request.app.state.cmdb,
        ResourceKind.VULNERABILITY,
        body.filters,
        body.sort,
        body.order.value,
        body.page,
        body.page_size,
        ctx,
    )
    return SearchResponse(
        result=[VulnerabilityResponse.from_vuln(v) for v in result.results],
        count=result.count,
        page=result.page,
    )


@limiter.limit("60/minute")
@router.get("/vulnerabilities/{vuln_id}", response_model=VulnerabilityResponse)
def get_vulnerability(
    request: Request,
    vuln_id: int,
    ctx: IdentityContext = Depends(get_identity),
) -> VulnerabilityResponse:
    org_id = request.app.state.resolver.vulnerability(vuln_id)
    require(ctx, VulnerabilityAction.READ, org_id)
    vuln = request.app.state.cmdb.get_vulnerability(vuln_id)
    if vuln is None:
        raise NotFoundError("vulnerability", vuln_id)
    return VulnerabilityResponse.from_vuln(vuln)


@limiter.limit("30/minute")
@router.put("/vulnerabilities/{vuln_id}", response_model=VulnerabilityResponse)
def update_vulnerability(
    request: Request,
    vuln_id: int,
    body: VulnerabilityUpdate,
    ctx: IdentityContext = Depends(get_identity),
) -> VulnerabilityResponse:
    """Set a new substate. state follows from it and is never accepted as input."""
    vuln = transition(
        request.app.state.cmdb,
        request.app.state.resolver,
        vuln_id,
        body.substate,
        ctx,
    )
    return VulnerabilityResponse.from_vuln(vuln)


@limiter.limit("60/minute")
@router.get("/vulnerabilities/{vuln_id}/history", response_model=list[SubstateChangeResponse])
def get_vulnerability_history(
    request: Request,
    vuln_id: int,
    ctx: IdentityContext = Depends(get_identity),
) -> list[SubstateChangeResponse]:
    org_id = request.app.state.resolver.vulnerability(vuln_id)
    require(ctx, VulnerabilityAction.READ, org_id)
    changes = request.app.state.cmdb.get_substate_history(vuln_id)
    return [SubstateChangeResponse.from_change(c) for c in changes]
