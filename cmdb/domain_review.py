"""
cmdb/domain_review.py -- Domain Review Workflow.

Discovered domains start pending. A reviewer moves them to approved or
disavowed; both are terminal here. Asking to move a domain back to pending
is rejected with InvalidTransitionError("reopen_not_allowed").

Batches are all-or-nothing on authorization: every id is resolved and
checked before anything is written, so one forbidden (or unknown) domain
fails the whole batch with zero changes. Domains that are already reviewed
are skipped, which keeps a repeated "approve all" from a stale page safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from auth.models import DomainAction, IdentityContext
from auth.policy import require
from cmdb.models import DOMAIN_STATUSES, ResourceKind
from cmdb.ownership import OwnershipResolver
from cmdb.search import SearchQuery, SearchResult, prepare, run
from cmdb.store import CMDBStore
from core.errors import InvalidTransitionError, ValidationError

logger = logging.getLogger("vulnconsole.cmdb")

REVIEW_OUTCOMES = ("approved", "disavowed")


@dataclass
class ReviewResult:
    updated: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


def _validate_status(new_status: str) -> None:
    if new_status == "pending":
        raise InvalidTransitionError(
            "reopen_not_allowed",
            "Reviewed domains cannot be moved back to pending.",
        )
    if new_status not in DOMAIN_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(REVIEW_OUTCOMES)}",
            code="invalid_status",
        )


def review_domains(
    cmdb: CMDBStore,
    resolver: OwnershipResolver,
    domain_ids: list[int],
    new_status: str,
    ctx: IdentityContext,
) -> ReviewResult:
    """Move every pending domain in domain_ids to new_status.

    Raises:
        InvalidTransitionError -- new_status is "pending"
        ValidationError        -- unknown status or empty batch
        NotFoundError          -- any id does not exist (whole batch fails)
        AuthorizationError     -- caller cannot review any one domain (whole batch fails)
    """
    _validate_status(new_status)
    ids = list(dict.fromkeys(domain_ids))
    if not ids:
        raise ValidationError("domain_ids must not be empty.", code="empty_batch")

    owners = resolver.domains(ids)
    for org_id in set(owners.values()):
        require(ctx, DomainAction.REVIEW, org_id)

    updated = cmdb.set_pending_domains_status(ids, new_status)
    changed = set(updated)
    skipped = [domain_id for domain_id in ids if domain_id not in changed]
    logger.info(
        "Domain review by user %s: %d %s, %d already reviewed",
        ctx.user_id,
        len(updated),
        new_status,
        len(skipped),
    )
    return ReviewResult(updated=updated, skipped=skipped)


def pending_query(
    filters: Optional[dict[str, Any]] = None,
    page: Any = 1,
    page_size: Any = None,
) -> SearchQuery:
    """Validate the pending-list request that follows a review.

    Called before review_domains() so a bad page, pageSize or filter is
    rejected while nothing has been written yet.
    """
    requested = dict(filters or {})
    requested["status"] = "pending"
    return prepare(ResourceKind.DOMAIN, requested, None, None, page, page_size)


def pending_page(cmdb: CMDBStore, ctx: IdentityContext, query: Optional[SearchQuery] = None) -> SearchResult:
    """Return a page of pending domains visible to the caller.

    After a batch review shrinks the pending set, the page the reviewer was
    on may now be past the end. In that case the first page is returned
    instead of an empty one.
    """
    query = query or pending_query()
    result = run(cmdb, query, ctx)
    if not result.results and result.count > 0 and query.page > 1:
        result = run(cmdb, query.with_page(1), ctx)
    return result
