"""
Status resolver: live provider snapshot -> canonical ``EntitlementStatus``.

Rules, first match wins:

1. integrity check required and failed      -> integrity_failed
2. expiry <= now                            -> expired
3. provider declared an explicit lifecycle  -> that status
4. payment confirmed, no cancel reason      -> active
5. payment confirmed, cancel reason present -> cancelled
6. otherwise                                -> pending

An expired subscription is expired whatever else the provider reports, lifecycle
included. Lifecycle declarations come from the freshly fetched provider response,
never from the push body, so a late notification cannot override live state.
"""
from __future__ import annotations

from datetime import datetime

from paywall.enums import EntitlementStatus
from paywall.integrations.base import SubscriptionState
from paywall.models.base import as_utc, utc_now


def resolve(
    state: SubscriptionState,
    *,
    integrity_required: bool = False,
    integrity_trusted: bool = True,
    now: datetime | None = None,
) -> EntitlementStatus:
    if integrity_required and not integrity_trusted:
        return EntitlementStatus.integrity_failed

    current = as_utc(now) or utc_now()
    expiry = as_utc(state.expiry)
    if expiry is not None and expiry <= current:
        return EntitlementStatus.expired

    if state.lifecycle is not None:
        return state.lifecycle

    if state.payment_state.is_confirmed:
        if state.cancel_reason is None:
            return EntitlementStatus.active
        return EntitlementStatus.cancelled

    return EntitlementStatus.pending
