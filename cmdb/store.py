"""
cmdb/store.py -- SQLAlchemy-backed persistence layer for the VulnConsole CMDB.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in cmdb/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. CMDBStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers. Route
handlers never touch SQL directly.

Security: all queries use bound parameters. No f-strings in SQL.

Vulnerabilities store substate only. state is derived on read
(cmdb/models.SUBSTATE_STATES), and a state filter is expanded to the matching
substates by cmdb/search.py before it reaches query_paged().

Usage:
    store = CMDBStore()                               # SQLite default
    store = CMDBStore("postgresql://user:pw@host/db") # PostgreSQL
    org_id = store.create_organization(Organization(name="Acme"))
    domain_id = store.create_domain(Domain(organization_id=org_id, name="www.acme.gov"))
    rows, count = store.query_paged(ResourceKind.DOMAIN, {"organization": [org_id]}, "created_at", "ASC", 1, 25)
    store.close()
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    ColumnElement,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from cmdb.models import SUBSTATE_STATES, Domain, Organization, ResourceKind, SubstateChange, Vulnerability
from core.config import get_settings
from core.errors import StorageError

logger = logging.getLogger("vulnconsole.cmdb")

UNBOUNDED_PAGE_SIZE = -1

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("root_domains", Text),  # JSON array serialized as text
    Column("ip_blocks", Text),  # JSON array serialized as text
    Column("is_passive", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_domains = Table(
    "domains",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("ip", String(45)),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_vulns = Table(
    "vulnerabilities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("domain_id", Integer, ForeignKey("domains.id"), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("cve", String(30)),
    Column("cwe", String(30)),
    Column("cpe", String(255)),
    Column("description", Text, nullable=False, server_default=""),
    Column("severity", String(10), nullable=False, server_default="None"),
    Column("substate", String(20), nullable=False, server_default="unconfirmed"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_seen", String(32)),
)

_substate_history = Table(
    "vulnerability_substate_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vulnerability_id", Integer, nullable=False, index=True),
    Column("from_substate", String(20), nullable=False),
    Column("to_substate", String(20), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("changed_at", String(32), nullable=False),
)

# Coarse state derived from the stored substate.
_state_column = case(
    (_vulns.c.substate.in_([s for s, state in SUBSTATE_STATES.items() if state == "open"]), "open"),
    else_="closed",
)

# Sortable column per public field name. Keys are the only sort values
# cmdb/search.py lets through.
SORT_COLUMNS: dict[ResourceKind, dict[str, ColumnElement]] = {
    ResourceKind.DOMAIN: {
        "created_at": _domains.c.created_at,
        "updated_at": _domains.c.updated_at,
        "name": _domains.c.name,
        "ip": _domains.c.ip,
        "status": _domains.c.status,
    },
    ResourceKind.VULNERABILITY: {
        "created_at": _vulns.c.created_at,
        "updated_at": _vulns.c.updated_at,
        "title": _vulns.c.title,
        "cve": _vulns.c.cve,
        "severity": _vulns.c.severity,
        "substate": _vulns.c.substate,
        "state": _state_column,
        "domain": _domains.c.name,
    },
    ResourceKind.ORGANIZATION: {
        "created_at": _organizations.c.created_at,
        "name": _organizations.c.name,
    },
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _substring(column, value: str):
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return column.ilike(f"%{escaped}%", escape="\\")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CMDBStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().cmdb_database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # FastAPI runs sync handlers in a thread pool, so one pooled
            # connection may be used from several threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            metadata.create_all(self.engine)
        except OperationalError as exc:
            raise StorageError("cmdb database unavailable") from exc

    @contextmanager
    def _connect(self, begin: bool = False) -> Iterator[Connection]:
        """Yield a connection, translating driver failures into StorageError."""
        try:
            with self.engine.begin() if begin else self.engine.connect() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("cmdb database error: %s", exc)
            raise StorageError("cmdb database error") from exc

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization) -> int:
        """Insert a new organization and return its assigned database ID."""
        now = _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _organizations.insert().values(
                    name=org.name,
                    root_domains=json.dumps(org.root_domains),
                    ip_blocks=json.dumps(org.ip_blocks),
                    is_passive=org.is_passive,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_org(row) if row is not None else None

    def update_organization(self, org_id: int, **fields) -> bool:
        """Update mutable fields: name, root_domains, ip_blocks, is_passive.

        root_domains and ip_blocks must be passed as list[str].
        Returns True if a row was updated, False if org_id was not found.
        """
        for key in ("root_domains", "ip_blocks"):
            if key in fields:
                fields[key] = json.dumps(fields[key])
        fields["updated_at"] = _now_iso()
        with self._connect() as conn:
            result = conn.execute(_organizations.update().where(_organizations.c.id == org_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_domains_for_org(self, org_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_domains).where(_domains.c.organization_id == org_id)
            ).scalar()
        return result or 0

    def delete_organization(self, org_id: int) -> int:
        """Delete an organization that owns no domains.

        The domain check and the delete share one transaction. Returns the
        number of rows removed (0 when the org is missing or still has domains).
        """
        with self._connect(begin=True) as conn:
            owned = conn.execute(
                select(func.count()).select_from(_domains).where(_domains.c.organization_id == org_id)
            ).scalar()
            if owned:
                return 0
            result = conn.execute(_organizations.delete().where(_organizations.c.id == org_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def create_domain(self, domain: Domain) -> int:
        """Insert a discovered domain. New domains always start pending."""
        now = domain.created_at or _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _domains.insert().values(
                    organization_id=domain.organization_id,
                    name=domain.name.lower(),
                    ip=domain.ip,
                    status="pending",
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_domain(self, domain_id: int) -> Optional[Domain]:
        with self._connect() as conn:
            row = conn.execute(_domains.select().where(_domains.c.id == domain_id)).fetchone()
        return _row_to_domain(row) if row is not None else None

    def get_domains(self, domain_ids: list[int]) -> dict[int, Domain]:
        """Fetch several domains in one query, keyed by id. Missing ids are absent."""
        with self._connect() as conn:
            rows = conn.execute(_domains.select().where(_domains.c.id.in_(domain_ids))).fetchall()
        return {r.id: _row_to_domain(r) for r in rows}

    def set_pending_domains_status(self, domain_ids: list[int], status: str) -> list[int]:
        """Move the still-pending members of domain_ids to status in one transaction.

        Domains that are no longer pending (reviewed by a concurrent request)
        are left untouched. Returns the ids that actually changed.
        """
        with self._connect(begin=True) as conn:
            pending = (_domains.c.id.in_(domain_ids)) & (_domains.c.status == "pending")
            changed = [r.id for r in conn.execute(select(_domains.c.id).where(pending)).fetchall()]
            if changed:
                conn.execute(
                    _domains.update().where(_domains.c.id.in_(changed)).values(status=status, updated_at=_now_iso())
                )
        return sorted(changed)

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def create_vulnerability(self, vuln: Vulnerability) -> int:
        now = _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _vulns.insert().values(
                    domain_id=vuln.domain_id,
                    title=vuln.title,
                    cve=vuln.cve.upper() if vuln.cve else None,
                    cwe=vuln.cwe,
                    cpe=vuln.cpe,
                    description=vuln.description,
                    severity=vuln.severity,
                    substate=vuln.substate,
                    created_at=vuln.created_at or now,
                    updated_at=now,
                    last_seen=vuln.last_seen,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_vulnerability(self, vuln_id: int) -> Optional[Vulnerability]:
        stmt = (
            select(_vulns, _domains.c.organization_id, _domains.c.name.label("domain_name"))
            .select_from(_vulns.join(_domains, _vulns.c.domain_id == _domains.c.id))
            .where(_vulns.c.id == vuln_id)
        )
        with self._connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_vuln(row) if row is not None else None

    def update_substate(self, vuln_id: int, substate: str, user_id: int) -> Optional[str]:
        """Write a new substate and its audit record in one transaction.

        Returns the previous substate, or None if vuln_id does not exist.
        updated_at is stamped with the wall-clock time of this write. Writing
        the substate a vulnerability already has only refreshes updated_at;
        no audit record is added.
        """
        now = _now_iso()
        with self._connect(begin=True) as conn:
            previous = conn.execute(select(_vulns.c.substate).where(_vulns.c.id == vuln_id)).scalar()
            if previous is None:
                return None
            if previous == substate:
                conn.execute(_vulns.update().where(_vulns.c.id == vuln_id).values(updated_at=now))
                return previous
            conn.execute(_vulns.update().where(_vulns.c.id == vuln_id).values(substate=substate, updated_at=now))
            conn.execute(
                _substate_history.insert().values(
                    vulnerability_id=vuln_id,
                    from_substate=previous,
                    to_substate=substate,
                    user_id=user_id,
                    changed_at=now,
                )
            )
        return previous

    def get_substate_history(self, vuln_id: int) -> list[SubstateChange]:
        """Return all substate changes for a vulnerability, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _substate_history.select()
                .where(_substate_history.c.vulnerability_id == vuln_id)
                .order_by(_substate_history.c.changed_at, _substate_history.c.id)
            ).fetchall()
        return [
            SubstateChange(
                id=r.id,
                vulnerability_id=r.vulnerability_id,
                from_substate=r.from_substate,
                to_substate=r.to_substate,
                user_id=r.user_id,
                changed_at=r.changed_at,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Paged queries
    # ------------------------------------------------------------------

    def query_paged(
        self,
        kind: ResourceKind,
        filters: dict[str, Any],
        sort: str,
        order: str,
        page: int,
        page_size: int,
    ) -> tuple[list, int]:
        """Run a filtered, sorted, paginated query and return (rows, total).

        filters is the already-scoped filter set produced by cmdb/search.py.
        "organization" is a list of org ids (empty list = nothing visible) or
        absent for global scope. total counts every match, ignoring paging.
        page_size == UNBOUNDED_PAGE_SIZE returns every match.

        id is always the final sort key so repeated calls page identically.
        """
        if kind is ResourceKind.DOMAIN:
            base, from_clause, clauses, mapper, id_col = self._domain_query(filters)
        elif kind is ResourceKind.VULNERABILITY:
            base, from_clause, clauses, mapper, id_col = self._vuln_query(filters)
        else:
            base, from_clause, clauses, mapper, id_col = self._org_query(filters)

        sort_col = SORT_COLUMNS[kind][sort]
        ordering = [sort_col.desc() if order == "DESC" else sort_col.asc(), id_col.asc()]
        stmt = base.where(*clauses).order_by(*ordering)
        if page_size != UNBOUNDED_PAGE_SIZE:
            stmt = stmt.limit(page_size).offset((page - 1) * page_size)
        count_stmt = select(func.count()).select_from(from_clause).where(*clauses)

        with self._connect() as conn:
            rows = conn.execute(stmt).fetchall()
            total = conn.execute(count_stmt).scalar() or 0
        return [mapper(r) for r in rows], total

    def _domain_query(self, filters: dict[str, Any]):
        clauses = []
        if "organization" in filters:
            clauses.append(_domains.c.organization_id.in_(filters["organization"]))
        if filters.get("name"):
            clauses.append(_substring(_domains.c.name, filters["name"]))
        if filters.get("ip"):
            clauses.append(_domains.c.ip == filters["ip"])
        if filters.get("status"):
            clauses.append(_domains.c.status == filters["status"])
        return _domains.select(), _domains, clauses, _row_to_domain, _domains.c.id

    def _vuln_query(self, filters: dict[str, Any]):
        joined = _vulns.join(_domains, _vulns.c.domain_id == _domains.c.id)
        base = select(_vulns, _domains.c.organization_id, _domains.c.name.label("domain_name")).select_from(joined)
        clauses = []
        if "organization" in filters:
            clauses.append(_domains.c.organization_id.in_(filters["organization"]))
        if "substates" in filters:
            clauses.append(_vulns.c.substate.in_(filters["substates"]))
        if filters.get("title"):
            clauses.append(_substring(_vulns.c.title, filters["title"]))
        if filters.get("cve"):
            clauses.append(_vulns.c.cve == filters["cve"].upper())
        if filters.get("severity"):
            clauses.append(_vulns.c.severity == filters["severity"])
        if filters.get("domain") is not None:
            clauses.append(_vulns.c.domain_id == filters["domain"])
        if filters.get("domain_name"):
            clauses.append(_substring(_domains.c.name, filters["domain_name"]))
        return base, joined, clauses, _row_to_vuln, _vulns.c.id

    def _org_query(self, filters: dict[str, Any]):
        clauses = []
        if "organization" in filters:
            clauses.append(_organizations.c.id.in_(filters["organization"]))
        if filters.get("name"):
            clauses.append(_substring(_organizations.c.name, filters["name"]))
        return _organizations.select(), _organizations, clauses, _row_to_org, _organizations.c.id

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StorageError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_org(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        root_domains=json.loads(row.root_domains) if row.root_domains else [],
        ip_blocks=json.loads(row.ip_blocks) if row.ip_blocks else [],
        is_passive=bool(row.is_passive),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_domain(row) -> Domain:
    return Domain(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        ip=row.ip,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_vuln(row) -> Vulnerability:
    return Vulnerability(
        id=row.id,
        domain_id=row.domain_id,
        title=row.title,
        cve=row.cve,
        cwe=row.cwe,
        cpe=row.cpe,
        description=row.description or "",
        severity=row.severity,
        substate=row.substate,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_seen=row.last_seen,
        organization_id=getattr(row, "organization_id", None),
        domain_name=getattr(row, "domain_name", None),
    )
