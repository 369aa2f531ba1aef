"""
Entitlement writer: the only code that mutates ``Entitlement`` rows.

Runs inside the caller's transaction, after the idempotency reservation, so the
entitlement upsert, the purchase index row and the audit record commit (or roll
back) together. The user's row is locked for the read-modify-write.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlmodel import Session

from paywall import crud
from paywall.enums import AuditSource, EntitlementStatus, Provider
from paywall.models import Entitlement, as_utc, utc_now

from .tiers import credits_for, derive_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    entitlement: Entitlement | None
    applied: bool
    skipped: str | None = None


def _skip_reason(
    current: Entitlement | None,
    subscription_ref: str,
    status: EntitlementStatus,
    fetched_at: datetime | None,
) -> str | None:
    if current is None:
        return None
    current_status = EntitlementStatus(current.status)

    if current.subscription_ref == subscription_ref:
        # a finished lineage is only replaced by a new subscription
        if current_status.is_terminal and not status.is_terminal:
            return "terminal"
        stored = as_utc(current.state_fetched_at)
        incoming = as_utc(fetched_at)
        if stored is not None and incoming is not None and incoming < stored:
            return "stale"
        return None

    # an old subscription winding down must not demote the one in force
    if current_status is EntitlementStatus.active and status is not EntitlementStatus.active:
        return "superseded"
    return None


def apply(
    *,
    session: Session,
    key: str,
    user_id: str,
    provider: Provider,
    subscription_ref: str,
    purchase_ref: str,
    product_ref: str | None,
    status: EntitlementStatus,
    source: AuditSource,
    payer_identity: str | None = None,
    expires_at: datetime | None = None,
    fetched_at: datetime | None = None,
    extra: dict[str, Any] | None = None,
) -> WriteResult:
    current = crud.get_entitlement(session=session, user_id=user_id, for_update=True)
    skipped = _skip_reason(current, subscription_ref, status, fetched_at)
    audit_extra = dict(extra or {})

    if skipped is None:
        identity = crud.normalize_identity(payer_identity)
        if current is not None and current.subscription_ref == subscription_ref:
            identity = identity or current.payer_identity
            product_ref = product_ref or current.product_ref
        tier = derive_tier(status, product_ref)
        if current is None:
            current = Entitlement(
                user_id=user_id,
                tier=tier,
                status=status,
                provider=provider,
                subscription_ref=subscription_ref,
                purchase_ref=purchase_ref,
            )

        current.tier = tier
        current.status = status
        current.provider = provider
        current.subscription_ref = subscription_ref
        current.purchase_ref = purchase_ref
        current.product_ref = product_ref
        current.payer_identity = identity
        current.credits = credits_for(tier)
        current.expires_at = expires_at
        current.state_fetched_at = fetched_at or utc_now()
        current.updated_at = utc_now()
        crud.upsert_entitlement(session=session, entitlement=current)
        logger.info(
            f"Entitlement user={user_id} -> {status.value}/{tier.value} "
            f"({provider.value} {subscription_ref})"
        )
    else:
        audit_extra["skipped"] = skipped
        logger.info(
            f"Entitlement user={user_id} kept ({skipped}); "
            f"{provider.value} {subscription_ref} resolved {status.value}"
        )

    crud.index_purchase(
        session=session,
        purchase_ref=purchase_ref,
        user_id=user_id,
        provider=provider,
        subscription_ref=subscription_ref,
    )
    crud.write_audit_record(
        session=session,
        key=key,
        user_id=user_id,
        product_ref=product_ref,
        purchase_ref=purchase_ref,
        resolved_status=status,
        source=source,
        extra=audit_extra,
    )
    return WriteResult(entitlement=current, applied=skipped is None, skipped=skipped)
