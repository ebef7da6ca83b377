"""Unit tests for cmdb/domain_review.py -- the Domain Review Workflow.

Covers:
- approved admins move pending domains to approved / disavowed
- reopening (status "pending") is rejected with reason reopen_not_allowed
- one forbidden or unknown domain fails the whole batch with zero writes
- already-reviewed domains are skipped, duplicates collapsed
- pending_page() falls back to page 1 once the current page empties
- pending_query() rejects bad paging and filters before anything is read
"""

from types import MappingProxyType

import pytest

from auth.models import GlobalTier, IdentityContext, Membership, OrgRole
from cmdb.domain_review import pending_page, pending_query, review_domains
from core.errors import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError


def _admin_of(*org_ids: int, approved: bool = True) -> IdentityContext:
    return IdentityContext(
        user_id=1,
        memberships=MappingProxyType({o: Membership(role=OrgRole.ADMIN, approved=approved) for o in org_ids}),
    )


class TestReviewDomains:
    def test_approve_and_disavow(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        first, second = make_domain(org_id), make_domain(org_id)
        ctx = _admin_of(org_id)

        result = review_domains(cmdb, resolver, [first], "approved", ctx)
        assert result.updated == [first]
        assert result.skipped == []
        review_domains(cmdb, resolver, [second], "disavowed", ctx)

        assert cmdb.get_domain(first).status == "approved"
        assert cmdb.get_domain(second).status == "disavowed"

    def test_reopen_rejected(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        domain_id = make_domain(org_id)
        ctx = _admin_of(org_id)
        review_domains(cmdb, resolver, [domain_id], "approved", ctx)

        with pytest.raises(InvalidTransitionError) as exc_info:
            review_domains(cmdb, resolver, [domain_id], "pending", ctx)
        assert exc_info.value.reason == "reopen_not_allowed"
        assert cmdb.get_domain(domain_id).status == "approved"

    def test_unknown_status(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        with pytest.raises(ValidationError):
            review_domains(cmdb, resolver, [make_domain(org_id)], "deleted", _admin_of(org_id))

    def test_empty_batch(self, cmdb, resolver):
        with pytest.raises(ValidationError) as exc_info:
            review_domains(cmdb, resolver, [], "approved", _admin_of(1))
        assert exc_info.value.code == "empty_batch"

    def test_forbidden_domain_fails_whole_batch(self, cmdb, resolver, make_org, make_domain):
        mine, theirs = make_org("Mine"), make_org("Theirs")
        ok_domain, foreign_domain = make_domain(mine), make_domain(theirs)

        with pytest.raises(AuthorizationError):
            review_domains(cmdb, resolver, [ok_domain, foreign_domain], "approved", _admin_of(mine))
        assert cmdb.get_domain(ok_domain).status == "pending"
        assert cmdb.get_domain(foreign_domain).status == "pending"

    def test_unknown_domain_fails_whole_batch(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        domain_id = make_domain(org_id)
        with pytest.raises(NotFoundError):
            review_domains(cmdb, resolver, [domain_id, 999], "approved", _admin_of(org_id))
        assert cmdb.get_domain(domain_id).status == "pending"

    @pytest.mark.parametrize(
        "ctx",
        [
            IdentityContext(user_id=1, memberships=MappingProxyType({})),
            IdentityContext(user_id=1, global_tier=GlobalTier.GLOBAL_VIEW),
        ],
        ids=["no-membership", "global-view"],
    )
    def test_reviewers_need_admin_rights(self, cmdb, resolver, make_org, make_domain, ctx):
        domain_id = make_domain(make_org())
        with pytest.raises(AuthorizationError):
            review_domains(cmdb, resolver, [domain_id], "approved", ctx)

    def test_pending_admin_denied(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        with pytest.raises(AuthorizationError):
            review_domains(cmdb, resolver, [make_domain(org_id)], "approved", _admin_of(org_id, approved=False))

    def test_already_reviewed_skipped(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        first, second = make_domain(org_id), make_domain(org_id)
        ctx = _admin_of(org_id)
        review_domains(cmdb, resolver, [first], "disavowed", ctx)

        result = review_domains(cmdb, resolver, [first, second, second], "approved", ctx)
        assert result.updated == [second]
        assert result.skipped == [first]
        assert cmdb.get_domain(first).status == "disavowed"

    def test_global_admin_reviews_across_orgs(self, cmdb, resolver, make_org, make_domain):
        a, b = make_org("A"), make_org("B")
        ids = [make_domain(a), make_domain(b)]
        ctx = IdentityContext(user_id=1, global_tier=GlobalTier.GLOBAL_ADMIN)
        assert review_domains(cmdb, resolver, ids, "approved", ctx).updated == sorted(ids)


class TestPendingPage:
    def test_only_pending_and_scoped(self, cmdb, resolver, make_org, make_domain):
        mine, theirs = make_org("Mine"), make_org("Theirs")
        reviewed, pending = make_domain(mine), make_domain(mine)
        make_domain(theirs)
        ctx = _admin_of(mine)
        review_domains(cmdb, resolver, [reviewed], "approved", ctx)

        result = pending_page(cmdb, ctx)
        assert [d.id for d in result.results] == [pending]
        assert result.count == 1

    def test_approve_page_then_refetch_first_page(self, cmdb, resolver, make_org, make_domain):
        """Approving page 1 shrinks the set; page 1 then holds the former page 2."""
        org_id = make_org()
        ids = [make_domain(org_id, created_at=f"2024-01-0{i}T00:00:00+00:00") for i in range(1, 6)]
        ctx = _admin_of(org_id)

        first_page = pending_page(cmdb, ctx, pending_query(page=1, page_size=3))
        assert [d.id for d in first_page.results] == ids[:3]
        review_domains(cmdb, resolver, [d.id for d in first_page.results], "approved", ctx)

        refreshed = pending_page(cmdb, ctx, pending_query(page=1, page_size=3))
        assert [d.id for d in refreshed.results] == ids[3:]
        assert refreshed.count == 2

    def test_empty_later_page_falls_back(self, cmdb, resolver, make_org, make_domain):
        org_id = make_org()
        ids = [make_domain(org_id, created_at=f"2024-01-0{i}T00:00:00+00:00") for i in range(1, 5)]
        ctx = _admin_of(org_id)

        second_page = pending_page(cmdb, ctx, pending_query(page=2, page_size=2))
        review_domains(cmdb, resolver, [d.id for d in second_page.results], "approved", ctx)

        result = pending_page(cmdb, ctx, pending_query(page=2, page_size=2))
        assert result.page == 1
        assert [d.id for d in result.results] == ids[:2]

    def test_nothing_pending(self, cmdb, make_org):
        result = pending_page(cmdb, _admin_of(make_org()), pending_query(page=3, page_size=2))
        assert result.results == []
        assert result.count == 0
        assert result.page == 3

    @pytest.mark.parametrize(
        "kwargs, code",
        [
            ({"page_size": 0}, "invalid_paging"),
            ({"page": 0}, "invalid_paging"),
            ({"filters": {"owner": 1}}, "invalid_filter"),
        ],
        ids=["zero-page-size", "zero-page", "unknown-filter"],
    )
    def test_pending_query_rejects_bad_requests(self, kwargs, code):
        with pytest.raises(ValidationError) as exc_info:
            pending_query(**kwargs)
        assert exc_info.value.code == code

    def test_pending_query_forces_pending_status(self):
        query = pending_query({"status": "approved", "name": "acme"})
        assert query.filters["status"] == "pending"
        assert query.filters["name"] == "acme"
