"""
Identity conflict resolver.

A payer identity (e.g. the PayPal/Stripe/Google account email) may back an active
entitlement for at most one user. Only consulted for transitions into ``active``.

The identity row is locked before the lookup and stays locked until the caller
commits, so two activations for the same payer cannot both pass the check.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlmodel import Session

from paywall import crud
from paywall.enums import EntitlementStatus

logger = logging.getLogger(__name__)

DUPLICATE_IDENTITY_REASON = "Duplicate identity: payer already bound to another account."


@dataclass(frozen=True)
class Admission:
    admitted: bool
    reason: str | None = None
    conflicting_user_id: str | None = None


def admit(
    *,
    session: Session,
    user_id: str,
    payer_identity: str | None,
    candidate_status: EntitlementStatus,
) -> Admission:
    if candidate_status is not EntitlementStatus.active or not payer_identity:
        return Admission(admitted=True)

    crud.lock_payer_identity(session=session, identity=payer_identity)
    for other in crud.find_active_by_payer_identity(session=session, identity=payer_identity):
        if other.user_id != user_id:
            logger.warning(
                f"Payer {payer_identity} already active for user {other.user_id}, "
                f"rejecting activation for user {user_id}"
            )
            return Admission(
                admitted=False,
                reason=DUPLICATE_IDENTITY_REASON,
                conflicting_user_id=other.user_id,
            )
    return Admission(admitted=True)
