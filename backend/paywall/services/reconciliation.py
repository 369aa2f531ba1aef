"""
Entitlement reconciliation engine.

One instance per unit of work (request). Pipeline::

    normalize -> reserve key -> re-verify with provider -> resolve owner
              -> resolve status -> admit identity -> write -> commit

Every failure after the reservation rolls the session back, which releases the
key so a redelivery (or a later verify call) can run the whole pipeline again.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from paywall import crud
from paywall.api.errors import (
    AppError,
    MalformedPayload,
    ProviderUnavailable,
    UnsupportedNotification,
    purchase_owned_by_other_account,
    verification_rejected,
)
from paywall.core.config import settings
from paywall.enums import (
    AuditSource,
    EntitlementStatus,
    Provider,
    ReconcileOutcome,
    Tier,
)
from paywall.integrations import (
    AttestationVerdict,
    ProviderGateway,
    SubscriptionState,
    get_gateway,
)

from . import identity, idempotency, status_resolver, writer
from .events import CLIENT_VERIFY_KIND, BillingEvent
from .normalizer import normalize

logger = logging.getLogger(__name__)

PAYMENT_FAILURE_CANCEL_REASON = "Payment failed, subscription cancelled automatically."
USER_CANCEL_REASON = "Cancelled by the account owner."

GatewayFactory = Callable[[Provider], ProviderGateway]


@dataclass(frozen=True)
class ReconciliationOutcome:
    outcome: ReconcileOutcome
    key: str | None = None
    user_id: str | None = None
    status: EntitlementStatus | None = None
    tier: Tier | None = None
    detail: str | None = None
    provider: Provider | None = None

    @property
    def entitled(self) -> bool:
        return self.status is EntitlementStatus.active


class _UnknownOwner(Exception):
    pass


class _OwnerMismatch(Exception):
    pass


def _state_extra(event: BillingEvent, state: SubscriptionState) -> dict[str, Any]:
    return {
        "provider": event.provider.value,
        "subscription_ref": event.subscription_ref,
        "notification_kind": event.notification_kind,
        "event_id": event.event_id,
        "declared_status": event.declared_status.value if event.declared_status else None,
        "payment_state": state.payment_state.value,
        "cancel_reason": state.cancel_reason,
        "lifecycle": state.lifecycle.value if state.lifecycle else None,
        "expiry": state.expiry.isoformat() if state.expiry else None,
        "revision": state.revision,
        "fetched_at": state.fetched_at.isoformat(),
    }


class ReconciliationEngine:
    def __init__(
        self,
        session: Session,
        gateway_factory: GatewayFactory = get_gateway,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self._gateways = gateway_factory
        self._now = now

    def handle_notification(
        self, provider: Provider, raw_payload: bytes, headers: Mapping[str, str]
    ) -> ReconciliationOutcome:
        """
        Entry point for provider push deliveries.

        ``SignatureInvalid`` propagates so the endpoint can refuse the delivery;
        every other failure becomes an outcome the endpoint acknowledges.
        """
        gateway = self._gateways(provider)
        try:
            event = normalize(raw_payload, provider, headers, gateway)
        except MalformedPayload as e:
            logger.warning(f"Dropping malformed {provider.value} notification: {e.detail}")
            return ReconciliationOutcome(ReconcileOutcome.ignored, detail=e.detail)
        except UnsupportedNotification as e:
            logger.info(f"Ignoring unsupported {provider.value} notification {e.kind}")
            return ReconciliationOutcome(ReconcileOutcome.ignored, detail=e.kind)
        except ProviderUnavailable as e:
            # signature verification itself needed the provider
            logger.warning(f"{provider.value} unavailable during verification: {e.detail}")
            return ReconciliationOutcome(ReconcileOutcome.deferred, detail=e.detail)
        return self.process(event, gateway)

    def process(
        self, event: BillingEvent, gateway: ProviderGateway | None = None
    ) -> ReconciliationOutcome:
        """Reconcile one normalized push event, re-verifying it with the provider."""
        gateway = gateway or self._gateways(event.provider)
        key = event.idempotency_key
        cancel_after_commit: tuple[str, str | None] | None = None
        try:
            if idempotency.check_and_reserve(session=self.session, key=key):
                return ReconciliationOutcome(ReconcileOutcome.duplicate, key=key)

            state = gateway.fetch_subscription_state(
                event.subscription_ref, event.purchase_ref, event.product_ref
            )
            status = status_resolver.resolve(state, now=self._current_time())
            result = self._reconcile(event, state, status, gateway, key)
            self.session.commit()
            if self._should_cancel_on_payment_failure(event, result):
                cancel_after_commit = (event.subscription_ref, state.product_ref or event.product_ref)
        except ProviderUnavailable as e:
            self.session.rollback()
            logger.warning(f"Deferring {key}: {e.detail}")
            return ReconciliationOutcome(ReconcileOutcome.deferred, key=key, detail=e.detail)
        except MalformedPayload as e:
            self.session.rollback()
            logger.warning(f"Dropping {key}: {e.detail}")
            return ReconciliationOutcome(ReconcileOutcome.ignored, key=key, detail=e.detail)
        except _UnknownOwner:
            self.session.rollback()
            logger.warning(
                f"No account owns {event.provider.value} purchase {event.purchase_ref}, dropping {key}"
            )
            return ReconciliationOutcome(ReconcileOutcome.ignored, key=key, detail="unknown owner")
        except _OwnerMismatch as e:
            self.session.rollback()
            logger.warning(
                f"Conflicting owners for {event.provider.value} purchase {event.purchase_ref} "
                f"({e}), dropping {key}"
            )
            return ReconciliationOutcome(ReconcileOutcome.ignored, key=key, detail="owner mismatch")
        except IntegrityError as e:
            # concurrent first write for the same user or purchase
            self.session.rollback()
            logger.warning(f"Deferring {key} after concurrent write: {e.orig}")
            return ReconciliationOutcome(ReconcileOutcome.deferred, key=key, detail="concurrent write")
        except Exception:
            self.session.rollback()
            raise

        if cancel_after_commit is not None:
            self._cancel_quietly(gateway, *cancel_after_commit)
        return result

    def verify(
        self,
        *,
        provider: Provider,
        purchase_ref: str,
        user_id: str,
        subscription_ref: str | None = None,
        product_ref: str | None = None,
        attestation: str | None = None,
    ) -> ReconciliationOutcome:
        """
        Synchronous client verification; the live provider response is authoritative.

        Raises ``ProviderUnavailable`` (503), ``purchase_owned_by_other_account`` (409)
        and ``verification_rejected`` (403, after the audit record is committed).
        """
        gateway = self._gateways(provider)
        subscription_ref = subscription_ref or purchase_ref

        owner = crud.find_user_by_purchase_ref(session=self.session, purchase_ref=purchase_ref)
        if owner is not None and owner != user_id:
            logger.warning(f"Purchase {purchase_ref} is indexed to {owner}, refused for {user_id}")
            raise purchase_owned_by_other_account()

        verdict = AttestationVerdict(trusted=True)
        if gateway.requires_attestation:
            if attestation:
                verdict = gateway.verify_attestation(attestation)
            else:
                verdict = AttestationVerdict(trusted=False, detail="attestation missing")
            if not verdict.trusted:
                logger.warning(f"Attestation failed for user {user_id}: {verdict.detail}")

        state = gateway.fetch_subscription_state(subscription_ref, purchase_ref, product_ref)
        if state.user_ref and state.user_ref != user_id:
            logger.warning(
                f"Purchase {purchase_ref} was made for {state.user_ref}, refused for {user_id}"
            )
            raise purchase_owned_by_other_account()

        event_id = f"verify-{state.revision}"
        if not verdict.trusted:
            event_id += "-untrusted"
        event = BillingEvent(
            provider=provider,
            subscription_ref=subscription_ref,
            purchase_ref=purchase_ref,
            notification_kind=CLIENT_VERIFY_KIND,
            user_id=user_id,
            product_ref=product_ref or state.product_ref,
            payer_identity=state.payer_identity,
            event_id=event_id,
            source=AuditSource.verify_call,
            extra={"attestation": verdict.detail} if verdict.detail else {},
        )
        status = status_resolver.resolve(
            state,
            integrity_required=gateway.requires_attestation,
            integrity_trusted=verdict.trusted,
            now=self._current_time(),
        )

        key = event.idempotency_key
        try:
            if idempotency.check_and_reserve(session=self.session, key=key):
                result = self._current_outcome(key, user_id, status)
            else:
                result = self._reconcile(event, state, status, gateway, key)
                self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Concurrent write while verifying {key}: {e.orig}")
            raise ProviderUnavailable("concurrent write")
        except _OwnerMismatch as e:
            self.session.rollback()
            logger.warning(f"Purchase {purchase_ref} claimed by other owners ({e}), refused for {user_id}")
            raise purchase_owned_by_other_account()
        except Exception:
            self.session.rollback()
            raise

        if result.status is EntitlementStatus.integrity_failed:
            raise verification_rejected()
        return result

    def cancel_for_user(self, user_id: str) -> ReconciliationOutcome:
        """
        Ask the provider to cancel the user's current subscription.

        The entitlement itself changes when the provider's notification arrives.
        """
        entitlement = crud.get_entitlement(session=self.session, user_id=user_id)
        if entitlement is None or EntitlementStatus(entitlement.status).is_terminal:
            raise AppError(code=404101, message="No subscription to cancel", status_code=404)

        provider = Provider(entitlement.provider)
        gateway = self._gateways(provider)
        ok = gateway.cancel_subscription(
            entitlement.subscription_ref, USER_CANCEL_REASON, product_ref=entitlement.product_ref
        )
        if not ok:
            raise AppError(code=409102, message="Subscription could not be cancelled", status_code=409)
        logger.info(f"User {user_id} cancelled {provider.value} {entitlement.subscription_ref}")
        return ReconciliationOutcome(
            ReconcileOutcome.applied,
            user_id=user_id,
            status=EntitlementStatus(entitlement.status),
            tier=Tier(entitlement.tier),
            provider=provider,
        )

    def _current_time(self) -> datetime | None:
        return self._now() if self._now else None

    def _current_outcome(
        self, key: str, user_id: str, status: EntitlementStatus
    ) -> ReconciliationOutcome:
        entitlement = crud.get_entitlement(session=self.session, user_id=user_id)
        tier = Tier(entitlement.tier) if entitlement else Tier.free
        return ReconciliationOutcome(
            ReconcileOutcome.duplicate, key=key, user_id=user_id, status=status, tier=tier
        )

    def _resolve_owner(self, event: BillingEvent, state: SubscriptionState) -> str:
        """
        The account the purchase belongs to.

        The provider's live echo outranks the purchase index, which outranks the
        notification body. Any two of them naming different accounts is refused.
        """
        indexed = crud.find_user_by_purchase_ref(
            session=self.session, purchase_ref=event.purchase_ref
        )
        claims = [
            ("provider", state.user_ref),
            ("index", indexed),
            ("notification", event.user_id),
        ]
        named = [(source, user) for source, user in claims if user]
        if not named:
            raise _UnknownOwner(event.purchase_ref)
        owner = named[0][1]
        if any(user != owner for _, user in named):
            raise _OwnerMismatch(", ".join(f"{source}={user}" for source, user in named))
        return owner

    def _admission_identity(
        self, event: BillingEvent, user_id: str, payer_identity: str | None
    ) -> str | None:
        identity = crud.normalize_identity(payer_identity)
        if identity is not None:
            return identity
        # the writer keeps the stored identity for the same lineage
        stored = crud.get_entitlement(session=self.session, user_id=user_id)
        if stored is not None and stored.subscription_ref == event.subscription_ref:
            return stored.payer_identity
        return None

    def _reconcile(
        self,
        event: BillingEvent,
        state: SubscriptionState,
        status: EntitlementStatus,
        gateway: ProviderGateway,
        key: str,
    ) -> ReconciliationOutcome:
        user_id = self._resolve_owner(event, state)
        product_ref = state.product_ref or event.product_ref
        payer_identity = state.payer_identity or event.payer_identity
        extra = {**_state_extra(event, state), **event.extra}

        if status is EntitlementStatus.integrity_failed:
            crud.write_audit_record(
                session=self.session,
                key=key,
                user_id=user_id,
                product_ref=product_ref,
                purchase_ref=event.purchase_ref,
                resolved_status=status,
                source=event.source,
                extra=extra,
            )
            return ReconciliationOutcome(
                ReconcileOutcome.integrity_failed,
                key=key,
                user_id=user_id,
                status=status,
                tier=Tier.free,
            )

        admission = identity.admit(
            session=self.session,
            user_id=user_id,
            payer_identity=self._admission_identity(event, user_id, payer_identity),
            candidate_status=status,
        )
        if not admission.admitted:
            cancelled = gateway.cancel_subscription(
                event.subscription_ref, admission.reason or "", product_ref=product_ref
            )
            if not cancelled:
                # the duplicate is still live; retry the whole event later
                logger.error(
                    f"{event.provider.value} refused to cancel duplicate subscription "
                    f"{event.subscription_ref} for user {user_id}"
                )
                raise ProviderUnavailable(
                    f"{event.provider.value} did not cancel {event.subscription_ref}"
                )
            extra["conflicting_user_id"] = admission.conflicting_user_id
            extra["reason"] = admission.reason
            crud.write_audit_record(
                session=self.session,
                key=key,
                user_id=user_id,
                product_ref=product_ref,
                purchase_ref=event.purchase_ref,
                resolved_status=EntitlementStatus.cancelled,
                source=event.source,
                extra=extra,
            )
            return ReconciliationOutcome(
                ReconcileOutcome.conflict,
                key=key,
                user_id=user_id,
                status=EntitlementStatus.cancelled,
                tier=Tier.free,
                detail=admission.reason,
            )

        result = writer.apply(
            session=self.session,
            key=key,
            user_id=user_id,
            provider=event.provider,
            subscription_ref=event.subscription_ref,
            purchase_ref=event.purchase_ref,
            product_ref=product_ref,
            status=status,
            source=event.source,
            payer_identity=payer_identity,
            expires_at=state.expiry,
            fetched_at=state.fetched_at,
            extra=extra,
        )
        if result.applied:
            return ReconciliationOutcome(
                ReconcileOutcome.applied,
                key=key,
                user_id=user_id,
                status=status,
                tier=Tier(result.entitlement.tier),
            )
        # report what remains in force
        stored = result.entitlement
        return ReconciliationOutcome(
            ReconcileOutcome.skipped,
            key=key,
            user_id=user_id,
            status=EntitlementStatus(stored.status),
            tier=Tier(stored.tier),
            detail=result.skipped,
        )

    def _should_cancel_on_payment_failure(
        self, event: BillingEvent, result: ReconciliationOutcome
    ) -> bool:
        return (
            settings.PAYPAL_CANCEL_ON_PAYMENT_FAILURE
            and event.provider is Provider.paypal
            and event.is_push
            and result.outcome is ReconcileOutcome.applied
            and result.status is EntitlementStatus.payment_failed
        )

    def _cancel_quietly(
        self, gateway: ProviderGateway, subscription_ref: str, product_ref: str | None
    ) -> None:
        try:
            cancelled = gateway.cancel_subscription(
                subscription_ref, PAYMENT_FAILURE_CANCEL_REASON, product_ref=product_ref
            )
        except ProviderUnavailable as e:
            logger.warning(f"Auto-cancel of {subscription_ref} failed: {e.detail}")
            return
        if cancelled:
            logger.info(f"Cancelled {subscription_ref} after payment failure")
        else:
            logger.warning(f"Auto-cancel of {subscription_ref} was refused by the provider")
