"""
cmdb/ownership.py -- Resource Ownership Resolver.

Turns a resource id into the facts auth/policy.py needs:

  user          -> the user id itself (for self checks)
  organization  -> the organization id itself
  domain        -> its owning organization id
  vulnerability -> the owning organization of its domain (looked up through
                   the domain every time, never copied onto the finding)

Every method raises NotFoundError when the id does not resolve. Callers must
let it reach the HTTP layer, which renders it exactly like an authorization
denial so unknown ids and forbidden ids look the same.

One lookup per call, no locks, no writes.
"""

from __future__ import annotations

from auth.store import UserStore
from cmdb.store import CMDBStore
from core.errors import NotFoundError


class OwnershipResolver:
    def __init__(self, cmdb: CMDBStore, user_store: UserStore) -> None:
        self.cmdb = cmdb
        self.user_store = user_store

    def user(self, user_id: int) -> int:
        if self.user_store.get_user(user_id) is None:
            raise NotFoundError("user", user_id)
        return user_id

    def organization(self, org_id: int) -> int:
        if self.cmdb.get_organization(org_id) is None:
            raise NotFoundError("organization", org_id)
        return org_id

    def domain(self, domain_id: int) -> int:
        domain = self.cmdb.get_domain(domain_id)
        if domain is None:
            raise NotFoundError("domain", domain_id)
        return domain.organization_id

    def domains(self, domain_ids: list[int]) -> dict[int, int]:
        """Resolve a batch of domain ids to {domain_id: organization_id}.

        Raises NotFoundError for the first id that does not exist.
        """
        found = self.cmdb.get_domains(domain_ids)
        for domain_id in domain_ids:
            if domain_id not in found:
                raise NotFoundError("domain", domain_id)
        return {domain_id: found[domain_id].organization_id for domain_id in domain_ids}

    def vulnerability(self, vuln_id: int) -> int:
        vuln = self.cmdb.get_vulnerability(vuln_id)
        if vuln is None:
            raise NotFoundError("vulnerability", vuln_id)
        return self.domain(vuln.domain_id)
