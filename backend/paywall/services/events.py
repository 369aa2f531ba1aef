"""Canonical billing event passed through the reconciliation pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from paywall.enums import AuditSource, EntitlementStatus, Provider

CLIENT_VERIFY_KIND = "CLIENT_VERIFY"


@dataclass(frozen=True)
class BillingEvent:
    """
    Provider-agnostic view of one inbound notification.

    Transient: built per delivery, processed, then discarded. ``provider`` is the
    discriminant; the per-provider normalizers are the only code that knows the
    shape of the original body.
    """

    provider: Provider
    subscription_ref: str
    purchase_ref: str
    notification_kind: str
    user_id: str | None = None
    product_ref: str | None = None
    payer_identity: str | None = None
    event_id: str | None = None
    declared_status: EntitlementStatus | None = None
    source: AuditSource = AuditSource.webhook
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return idempotency_key(self.purchase_ref, self.event_id or self.notification_kind)

    @property
    def is_push(self) -> bool:
        return self.source is AuditSource.webhook


def idempotency_key(purchase_ref: str, discriminator: str) -> str:
    """``tok-1`` + ``ACTIVATED`` -> ``tok-1_ACTIVATED``; opaque to the store."""
    return f"{purchase_ref}_{discriminator}"
