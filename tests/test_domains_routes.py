"""
tests/test_domains_routes.py -- Integration tests for /api/v1/domain.

Coverage:
  - search scoped to the caller's organizations, forged org filters ignored
  - pageSize alias and the -1 export size
  - domain detail: members read, outsiders and unknown ids get 403 {}
  - update-status: approve a page, receive the refreshed pending page
  - reopen rejected with 400, forbidden batches rejected with no changes
  - a bad pending-list page or filter is rejected before any domain changes
"""

from __future__ import annotations

import pytest


def _seed(make_org, make_domain, count: int = 5):
    org_id = make_org()
    ids = [make_domain(org_id, created_at=f"2024-01-{i:02d}T00:00:00+00:00") for i in range(1, count + 1)]
    return org_id, ids


class TestSearch:
    def test_member_search_is_scoped(self, client, make_user, make_org, make_domain, auth_headers):
        org_id, ids = _seed(make_org, make_domain, 3)
        other_org, _ = _seed(make_org, make_domain, 2)
        member = make_user(roles={org_id: ("user", False)})

        resp = client.post(
            "/api/v1/domain/search",
            json={"filters": {"organization": [other_org]}},
            headers=auth_headers(member),
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert [d["id"] for d in body["result"]] == ids
        assert body["count"] == 3
        assert body["page"] == 1

    def test_page_size_alias(self, client, make_user, make_org, make_domain, auth_headers):
        _org_id, ids = _seed(make_org, make_domain)
        viewer = make_user(user_type="globalView")
        body = client.post(
            "/api/v1/domain/search",
            json={"page": 2, "pageSize": 2},
            headers=auth_headers(viewer),
        ).json()
        assert [d["id"] for d in body["result"]] == ids[2:4]
        assert body["count"] == 5

    def test_export_all(self, client, make_user, make_org, make_domain, auth_headers):
        _org_id, ids = _seed(make_org, make_domain)
        viewer = make_user(user_type="globalView")
        body = client.post("/api/v1/domain/search", json={"pageSize": -1}, headers=auth_headers(viewer)).json()
        assert [d["id"] for d in body["result"]] == ids

    def test_bad_sort_is_400(self, client, make_user, auth_headers):
        viewer = make_user(user_type="globalView")
        resp = client.post("/api/v1/domain/search", json={"sort": "secret"}, headers=auth_headers(viewer))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_sort"

    def test_unauthenticated(self, client):
        assert client.post("/api/v1/domain/search", json={}).status_code == 401


class TestDetail:
    def test_member_reads(self, client, make_user, make_org, make_domain, auth_headers):
        org_id, ids = _seed(make_org, make_domain, 1)
        member = make_user(roles={org_id: ("user", False)})
        resp = client.get(f"/api/v1/domain/{ids[0]}", headers=auth_headers(member))
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"

    def test_outsider_and_unknown_look_alike(self, client, make_user, make_org, make_domain, auth_headers):
        _org_id, ids = _seed(make_org, make_domain, 1)
        outsider = make_user()
        forbidden = client.get(f"/api/v1/domain/{ids[0]}", headers=auth_headers(outsider))
        missing = client.get("/api/v1/domain/999", headers=auth_headers(outsider))
        assert forbidden.status_code == missing.status_code == 403
        assert forbidden.json() == missing.json() == {}


class TestUpdateStatus:
    def test_approve_page_returns_refreshed_first_page(
        self, client, cmdb, make_user, make_org, make_domain, auth_headers
    ):
        org_id, ids = _seed(make_org, make_domain)
        admin = make_user(roles={org_id: ("admin", True)})
        headers = auth_headers(admin)

        page_one = client.post(
            "/api/v1/domain/search",
            json={"pageSize": 3, "filters": {"status": "pending"}},
            headers=headers,
        ).json()
        shown = [d["id"] for d in page_one["result"]]

        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": shown, "status": "approved", "page": 1, "pageSize": 3},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["updated"] == shown
        assert body["skipped"] == []
        assert [d["id"] for d in body["pending"]["result"]] == ids[3:]
        assert body["pending"]["count"] == 2
        assert all(cmdb.get_domain(i).status == "approved" for i in shown)

    def test_emptied_page_falls_back_to_first(self, client, make_user, make_org, make_domain, auth_headers):
        org_id, ids = _seed(make_org, make_domain, 4)
        admin = make_user(roles={org_id: ("admin", True)})
        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": ids[2:], "status": "disavowed", "page": 2, "pageSize": 2},
            headers=auth_headers(admin),
        )
        pending = resp.json()["pending"]
        assert pending["page"] == 1
        assert [d["id"] for d in pending["result"]] == ids[:2]

    def test_reopen_is_400(self, client, make_user, make_org, make_domain, auth_headers):
        org_id, ids = _seed(make_org, make_domain, 1)
        admin = make_user(roles={org_id: ("admin", True)})
        headers = auth_headers(admin)
        client.post("/api/v1/domain/update-status", json={"domain_ids": ids, "status": "approved"}, headers=headers)

        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": ids, "status": "pending"},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "reopen_not_allowed"

    def test_mixed_batch_is_403_with_no_changes(self, client, cmdb, make_user, make_org, make_domain, auth_headers):
        mine, my_ids = _seed(make_org, make_domain, 2)
        _theirs, their_ids = _seed(make_org, make_domain, 1)
        admin = make_user(roles={mine: ("admin", True)})

        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": my_ids + their_ids, "status": "approved"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 403
        assert resp.json() == {}
        assert all(cmdb.get_domain(i).status == "pending" for i in my_ids + their_ids)

    def test_plain_member_cannot_review(self, client, make_user, make_org, make_domain, auth_headers):
        org_id, ids = _seed(make_org, make_domain, 1)
        member = make_user(roles={org_id: ("user", True)})
        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": ids, "status": "approved"},
            headers=auth_headers(member),
        )
        assert resp.status_code == 403

    @pytest.mark.parametrize(
        "extra, code",
        [
            ({"pageSize": 0}, "invalid_paging"),
            ({"filters": {"owner": 1}}, "invalid_filter"),
        ],
        ids=["zero-page-size", "unknown-filter"],
    )
    def test_bad_pending_query_rejected_before_review(
        self, client, cmdb, make_user, make_org, make_domain, auth_headers, extra, code
    ):
        org_id, ids = _seed(make_org, make_domain, 2)
        admin = make_user(roles={org_id: ("admin", True)})
        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": ids, "status": "approved", **extra},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == code
        assert all(cmdb.get_domain(i).status == "pending" for i in ids)

    def test_empty_batch_is_400(self, client, make_user, auth_headers):
        admin = make_user(user_type="globalAdmin")
        resp = client.post(
            "/api/v1/domain/update-status",
            json={"domain_ids": [], "status": "approved"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 400
