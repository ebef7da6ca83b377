"""
cmdb/vuln_state.py -- Vulnerability State Machine.

A vulnerability's disposition is its substate. The coarse state is a pure
function of it:

  unconfirmed, exploitable                      -> open
  false-positive, accepted-risk, remediated     -> closed

Every substate can move to every other substate; the workflow models
reassessment, not a one-way lifecycle. What every transition does share is
the authorization precondition: approved membership in the owning
organization, or global admin.

Concurrent transitions on one finding are last-write-wins. Each accepted
write stamps updated_at with its own wall-clock time. A write that changes
the substate also appends a SubstateChange audit record in the same
transaction; repeating the current substate does not.
"""

from __future__ import annotations

import logging

from auth.models import IdentityContext, VulnerabilityAction
from auth.policy import require
from cmdb.models import SUBSTATE_STATES, Vulnerability
from cmdb.ownership import OwnershipResolver
from cmdb.store import CMDBStore
from core.errors import NotFoundError, ValidationError

logger = logging.getLogger("vulnconsole.cmdb")

SUBSTATES = tuple(SUBSTATE_STATES)
STATES = ("open", "closed")


def state_for(substate: str) -> str:
    """Return the state a substate maps to. Raises ValidationError if unknown."""
    try:
        return SUBSTATE_STATES[substate]
    except (KeyError, TypeError):
        raise ValidationError(
            f"substate must be one of: {', '.join(SUBSTATES)}",
            code="invalid_substate",
        ) from None


def substates_for(state: str) -> list[str]:
    """Inverse of state_for: every substate that maps to state."""
    if not isinstance(state, str) or state not in STATES:
        raise ValidationError(f"state must be one of: {', '.join(STATES)}", code="invalid_state")
    return [s for s, mapped in SUBSTATE_STATES.items() if mapped == state]


def transition(
    cmdb: CMDBStore,
    resolver: OwnershipResolver,
    vuln_id: int,
    new_substate: str,
    ctx: IdentityContext,
) -> Vulnerability:
    """Move a vulnerability to new_substate and return the updated record.

    Raises:
        ValidationError       -- new_substate is not a known substate
        NotFoundError         -- vuln_id does not exist
        AuthorizationError    -- caller lacks write access to the owning org

    Applying the same substate twice only refreshes updated_at.
    """
    state_for(new_substate)
    org_id = resolver.vulnerability(vuln_id)
    require(ctx, VulnerabilityAction.WRITE, org_id)

    previous = cmdb.update_substate(vuln_id, new_substate, ctx.user_id)
    if previous is None:
        # Deleted between the ownership lookup and the write.
        raise NotFoundError("vulnerability", vuln_id)
    logger.info(
        "Vulnerability %s: %s -> %s by user %s (state %s)",
        vuln_id,
        previous,
        new_substate,
        ctx.user_id,
        state_for(new_substate),
    )
    updated = cmdb.get_vulnerability(vuln_id)
    if updated is None:
        raise NotFoundError("vulnerability", vuln_id)
    return updated
