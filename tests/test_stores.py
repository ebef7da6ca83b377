"""Unit tests for auth/store.py and cmdb/store.py.

Covers:
- email uniqueness and lower-casing
- attach_role() creates at most one Role per (user, organization)
- delete_user() removes the user's roles
- organization update / delete, delete refused while domains exist
- domains always created pending, set_pending_domains_status() skips reviewed ones
- update_substate() writes the audit trail for real changes and stamps updated_at
- query_paged() ordering, pagination and unbounded export
- ping()
"""

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User
from cmdb.models import Domain, Organization, ResourceKind
from cmdb.store import UNBOUNDED_PAGE_SIZE


class TestUserStore:
    def test_email_is_unique_and_lowercased(self, user_store):
        uid = user_store.create_user(User(email="Alice@Example.GOV"))
        assert user_store.get_user(uid).email == "alice@example.gov"
        with pytest.raises(IntegrityError):
            user_store.create_user(User(email="alice@example.gov"))

    def test_attach_role_is_idempotent(self, user_store, make_user):
        uid = make_user()
        role, created = user_store.attach_role(uid, 3)
        assert created
        assert role.role == "user"
        assert role.approved is False

        again, created_again = user_store.attach_role(uid, 3, role="admin", approved=True)
        assert not created_again
        assert again.id == role.id
        assert again.role == "user"
        assert again.approved is False
        assert len(user_store.get_roles(uid)) == 1

    def test_approve_role_records_approver(self, user_store, make_user):
        uid = make_user()
        role, _ = user_store.attach_role(uid, 3)
        assert user_store.approve_role(role.id, approved_by=42)
        approved = user_store.get_role(role.id)
        assert approved.approved is True
        assert approved.approved_by == 42

    def test_delete_user_removes_roles(self, user_store, make_user):
        uid = make_user(roles={3: ("user", True), 4: ("admin", False)})
        assert user_store.delete_user(uid) == 1
        assert user_store.get_user(uid) is None
        assert user_store.count_roles_for_org(3) == 0
        assert user_store.delete_user(uid) == 0

    def test_update_user(self, user_store, make_user):
        uid = make_user()
        assert user_store.update_user(uid, first_name="Ada", user_type="globalView")
        user = user_store.get_user(uid)
        assert user.first_name == "Ada"
        assert user.user_type == "globalView"

    def test_ping(self, user_store):
        assert user_store.ping() is True


class TestOrganizations:
    def test_create_and_update(self, cmdb):
        org_id = cmdb.create_organization(Organization(name="Acme", root_domains=["acme.gov"]))
        assert cmdb.update_organization(org_id, name="Acme Corp", ip_blocks=["10.0.0.0/8"])
        org = cmdb.get_organization(org_id)
        assert org.name == "Acme Corp"
        assert org.root_domains == ["acme.gov"]
        assert org.ip_blocks == ["10.0.0.0/8"]

    def test_delete_refused_while_domains_exist(self, cmdb, make_org, make_domain):
        org_id = make_org()
        make_domain(org_id)
        assert cmdb.delete_organization(org_id) == 0
        assert cmdb.get_organization(org_id) is not None

    def test_delete_empty_org(self, cmdb, make_org):
        org_id = make_org()
        assert cmdb.delete_organization(org_id) == 1
        assert cmdb.get_organization(org_id) is None


class TestDomains:
    def test_created_pending_regardless_of_input(self, cmdb, make_org):
        org_id = make_org()
        domain_id = cmdb.create_domain(Domain(organization_id=org_id, name="WWW.Acme.gov", status="approved"))
        domain = cmdb.get_domain(domain_id)
        assert domain.status == "pending"
        assert domain.name == "www.acme.gov"

    def test_set_pending_status_skips_reviewed(self, cmdb, make_org, make_domain):
        org_id = make_org()
        first, second = make_domain(org_id), make_domain(org_id)
        assert cmdb.set_pending_domains_status([first], "disavowed") == [first]
        assert cmdb.set_pending_domains_status([first, second], "approved") == [second]
        assert cmdb.get_domain(first).status == "disavowed"
        assert cmdb.get_domain(second).status == "approved"


class TestVulnerabilities:
    def test_update_substate_writes_history(self, cmdb, make_org, make_domain, make_vuln):
        domain_id = make_domain(make_org())
        vuln_id = make_vuln(domain_id)
        before = cmdb.get_vulnerability(vuln_id)

        assert cmdb.update_substate(vuln_id, "exploitable", user_id=5) == "unconfirmed"
        assert cmdb.update_substate(vuln_id, "remediated", user_id=6) == "exploitable"

        after = cmdb.get_vulnerability(vuln_id)
        assert after.substate == "remediated"
        assert after.state == "closed"
        assert after.updated_at >= before.updated_at
        history = cmdb.get_substate_history(vuln_id)
        assert [(h.from_substate, h.to_substate, h.user_id) for h in history] == [
            ("unconfirmed", "exploitable", 5),
            ("exploitable", "remediated", 6),
        ]

    def test_unchanged_substate_adds_no_history(self, cmdb, make_org, make_domain, make_vuln):
        vuln_id = make_vuln(make_domain(make_org()))
        before = cmdb.get_vulnerability(vuln_id)
        assert cmdb.update_substate(vuln_id, "unconfirmed", user_id=5) == "unconfirmed"
        assert cmdb.get_vulnerability(vuln_id).updated_at >= before.updated_at
        assert cmdb.get_substate_history(vuln_id) == []

    def test_update_missing_vulnerability(self, cmdb):
        assert cmdb.update_substate(999, "remediated", user_id=1) is None
        assert cmdb.get_substate_history(999) == []

    def test_owner_joined_from_domain(self, cmdb, make_org, make_domain, make_vuln):
        org_id = make_org()
        domain_id = make_domain(org_id, name="api.acme.gov")
        vuln = cmdb.get_vulnerability(make_vuln(domain_id, cve="cve-2024-0001"))
        assert vuln.organization_id == org_id
        assert vuln.domain_name == "api.acme.gov"
        assert vuln.cve == "CVE-2024-0001"


class TestQueryPaged:
    def test_created_at_then_id_ordering(self, cmdb, make_org, make_domain):
        org_id = make_org()
        late = make_domain(org_id, created_at="2024-01-03T00:00:00+00:00")
        tie_a = make_domain(org_id, created_at="2024-01-01T00:00:00+00:00")
        tie_b = make_domain(org_id, created_at="2024-01-01T00:00:00+00:00")

        rows, total = cmdb.query_paged(ResourceKind.DOMAIN, {}, "created_at", "ASC", 1, 25)
        assert [d.id for d in rows] == [tie_a, tie_b, late]
        assert total == 3

        rows, _ = cmdb.query_paged(ResourceKind.DOMAIN, {}, "created_at", "DESC", 1, 25)
        assert [d.id for d in rows] == [late, tie_a, tie_b]

    def test_pagination_and_export(self, cmdb, make_org, make_domain):
        org_id = make_org()
        ids = [make_domain(org_id, created_at=f"2024-01-0{i}T00:00:00+00:00") for i in range(1, 6)]

        page2, total = cmdb.query_paged(ResourceKind.DOMAIN, {}, "created_at", "ASC", 2, 2)
        assert [d.id for d in page2] == ids[2:4]
        assert total == 5

        everything, total = cmdb.query_paged(ResourceKind.DOMAIN, {}, "created_at", "ASC", 1, UNBOUNDED_PAGE_SIZE)
        assert [d.id for d in everything] == ids
        assert total == 5

    def test_empty_organization_list_matches_nothing(self, cmdb, make_org, make_domain):
        make_domain(make_org())
        rows, total = cmdb.query_paged(ResourceKind.DOMAIN, {"organization": []}, "created_at", "ASC", 1, 25)
        assert rows == []
        assert total == 0

    def test_name_filter_escapes_wildcards(self, cmdb, make_org, make_domain):
        org_id = make_org()
        make_domain(org_id, name="a_b.acme.gov")
        make_domain(org_id, name="axb.acme.gov")
        rows, total = cmdb.query_paged(ResourceKind.DOMAIN, {"name": "a_b"}, "created_at", "ASC", 1, 25)
        assert total == 1
        assert rows[0].name == "a_b.acme.gov"

    def test_ping(self, cmdb):
        assert cmdb.ping() is True
