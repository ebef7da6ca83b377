"""
cmdb/models.py -- Domain dataclasses for the VulnConsole CMDB.

These are pure data containers. Lifecycle rules live in cmdb/vuln_state.py
and cmdb/domain_review.py; persistence lives in cmdb/store.py.

Vulnerability.state is not stored anywhere. It is read through the fixed
SUBSTATE_STATES table every time, so it cannot drift from substate.

Separation of concerns: these dataclasses are the CMDB's domain truth, just as
auth/models.py is the identity layer's domain truth.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ResourceKind(str, Enum):
    """Resource families the search layer can list."""

    DOMAIN = "domain"
    VULNERABILITY = "vulnerability"
    ORGANIZATION = "organization"


DOMAIN_STATUSES = ("pending", "approved", "disavowed")

SEVERITIES = ("None", "Low", "Medium", "High", "Critical")

# substate -> state. Every substate maps to exactly one state.
SUBSTATE_STATES: dict[str, str] = {
    "unconfirmed": "open",
    "exploitable": "open",
    "false-positive": "closed",
    "accepted-risk": "closed",
    "remediated": "closed",
}


@dataclass
class Organization:
    """An owner of domains and vulnerabilities.

    root_domains and ip_blocks are serialized as JSON arrays by the store.
    id is None before the record is written to the database.
    """

    name: str
    root_domains: list[str] = field(default_factory=list)
    ip_blocks: list[str] = field(default_factory=list)
    is_passive: bool = False
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Domain:
    """A discovered network asset owned by exactly one organization.

    Always created pending. Only cmdb/domain_review.py moves it to
    approved or disavowed.
    """

    organization_id: int
    name: str
    ip: Optional[str] = None
    status: str = "pending"  # "pending" | "approved" | "disavowed"
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Vulnerability:
    """A finding on one domain, hence owned transitively by one organization.

    The owning organization is always looked up through the domain
    (cmdb/ownership.py), never copied onto this record.
    """

    domain_id: int
    title: str
    severity: str = "None"
    substate: str = "unconfirmed"
    cve: Optional[str] = None
    cwe: Optional[str] = None
    cpe: Optional[str] = None
    description: str = ""
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    last_seen: Optional[str] = None
    # Read-only, joined from the domain on list queries. Never written.
    organization_id: Optional[int] = None
    domain_name: Optional[str] = None

    @property
    def state(self) -> str:
        return SUBSTATE_STATES[self.substate]


@dataclass
class SubstateChange:
    """Append-only audit entry written on every accepted substate transition."""

    vulnerability_id: int
    from_substate: str
    to_substate: str
    user_id: int
    changed_at: str
    id: Optional[int] = None
