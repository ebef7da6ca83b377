"""
api/routes/v1/domains.py -- Domain search and review routes.

Routes:
  POST /domain/search         -- scoped, paginated domain search
  GET  /domain/{id}           -- domain detail
  POST /domain/update-status  -- batch review of pending domains
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import (
    DomainResponse,
    DomainReviewRequest,
    DomainReviewResponse,
    SearchRequest,
    SearchResponse,
)
from auth.dependencies import get_identity
from auth.models import DomainAction, IdentityContext
from auth.policy import require
from cmdb.domain_review import pending_page, pending_query, review_domains
from cmdb.models import ResourceKind
from cmdb.search import SearchResult, search
from core.errors import NotFoundError

router = APIRouter(dependencies=[Depends(get_identity)])


def _page(result: SearchResult) -> SearchResponse:
    return SearchResponse(
        result=[DomainResponse.from_domain(d) for d in result.results],
        count=result.count,
        page=result.page,
    )


@limiter.limit("60/minute")
@router.post("/domain/search", response_model=SearchResponse)
def search_domains(
    request: Request,
    body: SearchRequest,
    ctx: IdentityContext = Depends(get_identity),
) -> SearchResponse:
    result = search(
        request.app.state.cmdb,
        ResourceKind.DOMAIN,
        body.filters,
        body.sort,
        body.order.value,
        body.page,
        body.page_size,
        ctx,
    )
    return _page(result)


@limiter.limit("60/minute")
@router.get("/domain/{domain_id}", response_model=DomainResponse)
def get_domain(request: Request, domain_id: int, ctx: IdentityContext = Depends(get_identity)) -> DomainResponse:
    org_id = request.app.state.resolver.domain(domain_id)
    require(ctx, DomainAction.READ, org_id)
    domain = request.app.state.cmdb.get_domain(domain_id)
    if domain is None:
        raise NotFoundError("domain", domain_id)
    return DomainResponse.from_domain(domain)


@limiter.limit("30/minute")
@router.post("/domain/update-status", response_model=DomainReviewResponse)
def update_domain_status(
    request: Request,
    body: DomainReviewRequest,
    ctx: IdentityContext = Depends(get_identity),
) -> DomainReviewResponse:
    """Approve or disavow a batch of pending domains.

    The response carries the refreshed pending list for the page the reviewer
    was on, falling back to the first page when that page is now empty.
    That follow-up query is validated before any domain is written.
    """
    cmdb = request.app.state.cmdb
    query = pending_query(body.filters, body.page, body.page_size)
    outcome = review_domains(cmdb, request.app.state.resolver, body.domain_ids, body.status, ctx)
    pending = pending_page(cmdb, ctx, query)
    return DomainReviewResponse(
        updated=outcome.updated,
        skipped=outcome.skipped,
        pending=_page(pending),
    )
