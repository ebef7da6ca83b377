"""
cmdb/search.py -- Query Scoping Layer.

Rewrites a caller-supplied search into an organization-scoped, validated,
deterministically ordered page request for CMDBStore.query_paged().

Scoping rule: for a caller without a global tier the "organization" filter
is OVERWRITTEN with the caller's own membership ids. Omitting it, forging it
or widening it changes nothing. Global-tier callers may narrow to any
organizations; with no organization filter their scope is global.

UNBOUNDED_PAGE_SIZE (-1) switches pagination off for exports. It never
switches scoping off.

prepare() validates a request without touching storage, so callers that
write before they read (the domain review) can reject a bad follow-up query
up front. run() scopes and executes a prepared query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from auth.models import IdentityContext
from cmdb.models import DOMAIN_STATUSES, SEVERITIES, ResourceKind
from cmdb.store import SORT_COLUMNS, UNBOUNDED_PAGE_SIZE, CMDBStore
from cmdb.vuln_state import state_for, substates_for
from core.config import get_settings
from core.errors import ValidationError

logger = logging.getLogger("vulnconsole.cmdb")

DEFAULT_SORT = "created_at"
DEFAULT_ORDER = "ASC"

FILTER_FIELDS: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.DOMAIN: frozenset({"organization", "name", "ip", "status"}),
    ResourceKind.VULNERABILITY: frozenset(
        {"organization", "title", "cve", "severity", "state", "substate", "domain"}
    ),
    ResourceKind.ORGANIZATION: frozenset({"organization", "name"}),
}

# Filters that take one scalar value, never a list.
_TEXT_FILTERS = ("name", "title", "ip", "cve", "status", "severity", "state", "substate")


@dataclass(frozen=True)
class SearchQuery:
    """A validated, not yet scoped, search request."""

    kind: ResourceKind
    filters: dict[str, Any]
    sort: str
    order: str
    page: int
    page_size: int

    def with_page(self, page: int) -> "SearchQuery":
        return replace(self, page=page)


@dataclass
class SearchResult:
    results: list = field(default_factory=list)
    count: int = 0
    page: int = 1
    page_size: int = 0


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _org_ids(value: Any) -> list[int]:
    values = value if isinstance(value, (list, tuple, set)) else [value]
    try:
        return sorted({int(v) for v in values})
    except (TypeError, ValueError):
        raise ValidationError("organization filter must be an id or a list of ids.", code="invalid_filter") from None


def _domain_filter(value: Any) -> dict[str, Any]:
    """An integer selects one domain by id; text matches part of the domain name."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError("domain filter must be an id or a name.", code="invalid_filter")
    if isinstance(value, int):
        return {"domain": value}
    return {"domain_name": value.strip()}


def _normalize_filters(kind: ResourceKind, requested: Optional[dict[str, Any]]) -> dict[str, Any]:
    filters = {k: v for k, v in (requested or {}).items() if v is not None and v != ""}
    unknown = set(filters) - FILTER_FIELDS[kind]
    if unknown:
        raise ValidationError(f"Unknown filter(s): {', '.join(sorted(unknown))}", code="invalid_filter")
    for key in _TEXT_FILTERS:
        if key in filters and not isinstance(filters[key], (str, int)):
            raise ValidationError(f"{key} filter must be a single value.", code="invalid_filter")

    normalized: dict[str, Any] = {}
    if "organization" in filters:
        normalized["organization"] = _org_ids(filters["organization"])
    for key in ("name", "title", "ip", "cve"):
        if key in filters:
            normalized[key] = str(filters[key]).strip()

    if "status" in filters:
        if filters["status"] not in DOMAIN_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(DOMAIN_STATUSES)}", code="invalid_filter")
        normalized["status"] = filters["status"]
    if "severity" in filters:
        if filters["severity"] not in SEVERITIES:
            raise ValidationError(f"severity must be one of: {', '.join(SEVERITIES)}", code="invalid_filter")
        normalized["severity"] = filters["severity"]
    if "domain" in filters:
        normalized.update(_domain_filter(filters["domain"]))

    # state and substate both narrow the stored substate column.
    if "state" in filters or "substate" in filters:
        allowed: Optional[set[str]] = None
        if "state" in filters:
            allowed = set(substates_for(filters["state"]))
        if "substate" in filters:
            state_for(filters["substate"])
            allowed = {filters["substate"]} if allowed is None else allowed & {filters["substate"]}
        normalized["substates"] = sorted(allowed)
    return normalized


def scope_filters(filters: dict[str, Any], ctx: IdentityContext) -> dict[str, Any]:
    """Apply mandatory organization scoping to already-normalized filters."""
    scoped = dict(filters)
    if not ctx.has_global_view:
        scoped["organization"] = ctx.organization_ids
    return scoped


def _normalize_paging(page: Any, page_size: Any) -> tuple[int, int]:
    settings = get_settings()
    try:
        page = int(page) if page is not None else 1
        page_size = int(page_size) if page_size is not None else settings.default_page_size
    except (TypeError, ValueError):
        raise ValidationError("page and pageSize must be integers.", code="invalid_paging") from None
    if page < 1:
        raise ValidationError("page must be >= 1.", code="invalid_paging")
    if page_size != UNBOUNDED_PAGE_SIZE and not 1 <= page_size <= settings.max_page_size:
        raise ValidationError(
            f"pageSize must be between 1 and {settings.max_page_size}, or {UNBOUNDED_PAGE_SIZE} for all.",
            code="invalid_paging",
        )
    return page, page_size


def _normalize_sort(kind: ResourceKind, sort: Optional[str], order: Optional[str]) -> tuple[str, str]:
    sort = sort or DEFAULT_SORT
    if sort not in SORT_COLUMNS[kind]:
        raise ValidationError(
            f"sort must be one of: {', '.join(sorted(SORT_COLUMNS[kind]))}",
            code="invalid_sort",
        )
    order = (order or DEFAULT_ORDER).upper()
    if order not in ("ASC", "DESC"):
        raise ValidationError("order must be ASC or DESC.", code="invalid_sort")
    return sort, order


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def prepare(
    kind: ResourceKind,
    requested_filters: Optional[dict[str, Any]],
    sort: Optional[str],
    order: Optional[str],
    page: Any,
    page_size: Any,
) -> SearchQuery:
    """Validate filters, sort and paging. Raises ValidationError, reads nothing."""
    filters = _normalize_filters(kind, requested_filters)
    sort, order = _normalize_sort(kind, sort, order)
    page, page_size = _normalize_paging(page, page_size)
    return SearchQuery(kind=kind, filters=filters, sort=sort, order=order, page=page, page_size=page_size)


def run(cmdb: CMDBStore, query: SearchQuery, ctx: IdentityContext) -> SearchResult:
    """Scope a prepared query to the caller and fetch one page."""
    filters = scope_filters(query.filters, ctx)
    rows, count = cmdb.query_paged(query.kind, filters, query.sort, query.order, query.page, query.page_size)
    logger.debug(
        "search %s by user %s: orgs=%s page=%d size=%d -> %d/%d",
        query.kind.value,
        ctx.user_id,
        filters.get("organization", "all"),
        query.page,
        query.page_size,
        len(rows),
        count,
    )
    return SearchResult(results=rows, count=count, page=query.page, page_size=query.page_size)


def search(
    cmdb: CMDBStore,
    kind: ResourceKind,
    requested_filters: Optional[dict[str, Any]],
    sort: Optional[str],
    order: Optional[str],
    page: Any,
    page_size: Any,
    ctx: IdentityContext,
) -> SearchResult:
    """Return one scoped page of resources and the scoped total count.

    Sort defaults to created_at ascending; id breaks ties, so identical calls
    always return identical pages.
    """
    return run(cmdb, prepare(kind, requested_filters, sort, order, page, page_size), ctx)
