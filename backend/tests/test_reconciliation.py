from __future__ import annotations

import json
from datetime import timedelta

import pytest
from sqlmodel import select

from paywall import crud
from paywall.api.errors import AppError, ProviderUnavailable
from paywall.core.config import settings
from paywall.enums import (
    AuditSource,
    EntitlementStatus,
    PaymentState,
    Provider,
    ReconcileOutcome,
    Tier,
)
from paywall.integrations import AttestationVerdict
from paywall.models import AuditRecord, PayerIdentityLock, PurchaseIndex
from paywall.services.events import BillingEvent
from paywall.services.identity import DUPLICATE_IDENTITY_REASON
from paywall.services.reconciliation import (
    PAYMENT_FAILURE_CANCEL_REASON,
    ReconciliationEngine,
)

CHAMP_PLAN = "P-9UR452758A657971KNCLU56Y"
GM_PLAN = "P-17E41445D70627342NCLVAWY"


def _event(
    sub: str = "sub-1",
    kind: str = "ACTIVATED",
    *,
    user_id: str | None = "u1",
    provider: Provider = Provider.paypal,
    event_id: str | None = None,
    purchase_ref: str | None = None,
    product_ref: str | None = CHAMP_PLAN,
) -> BillingEvent:
    return BillingEvent(
        provider=provider,
        subscription_ref=sub,
        purchase_ref=purchase_ref or sub,
        notification_kind=kind,
        user_id=user_id,
        product_ref=product_ref,
        event_id=event_id,
    )


def _audits(db) -> list[AuditRecord]:
    return list(db.exec(select(AuditRecord)).all())


def test_activation_example(db, gateways):
    gateways.paypal.set_state("tok-1", product_ref=CHAMP_PLAN)
    engine = ReconciliationEngine(db, gateways)

    result = engine.process(_event("tok-1", "ACTIVATED"))

    assert result.outcome is ReconcileOutcome.applied
    assert result.status is EntitlementStatus.active
    assert result.entitled

    entitlement = crud.get_entitlement(session=db, user_id="u1")
    assert entitlement.status == EntitlementStatus.active
    assert entitlement.tier == Tier.champ
    assert entitlement.credits == 10
    assert entitlement.subscription_ref == "tok-1"

    audits = _audits(db)
    assert [a.key for a in audits] == ["tok-1_ACTIVATED"]
    assert audits[0].resolved_status == EntitlementStatus.active
    assert audits[0].source == AuditSource.webhook
    assert audits[0].extra["revision"] == "r1"


def test_redelivery_is_duplicate_without_writes(db, gateways):
    gateways.paypal.set_state("tok-1", product_ref=CHAMP_PLAN)
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("tok-1", "ACTIVATED"))
    before = crud.get_entitlement(session=db, user_id="u1").updated_at

    result = engine.process(_event("tok-1", "ACTIVATED"))

    assert result.outcome is ReconcileOutcome.duplicate
    assert gateways.paypal.fetches == ["tok-1"]
    assert len(_audits(db)) == 1
    assert crud.get_entitlement(session=db, user_id="u1").updated_at == before


def test_event_id_distinguishes_occurrences(db, gateways):
    gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly")
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub_1", "invoice.paid", provider=Provider.stripe, event_id="evt_1"))
    engine.process(_event("sub_1", "invoice.paid", provider=Provider.stripe, event_id="evt_2"))
    assert sorted(a.key for a in _audits(db)) == ["sub_1_evt_1", "sub_1_evt_2"]


def test_identity_conflict_cancels_second_subscription(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    gateways.paypal.set_state("sub-2", product_ref=GM_PLAN, payer_identity=" A@X.com ")
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1", user_id="u1"))
    first = crud.get_entitlement(session=db, user_id="u1")
    first_updated = first.updated_at

    result = engine.process(_event("sub-2", user_id="u2", product_ref=GM_PLAN))

    assert result.outcome is ReconcileOutcome.conflict
    assert result.status is EntitlementStatus.cancelled
    assert gateways.paypal.cancelled == [("sub-2", DUPLICATE_IDENTITY_REASON, GM_PLAN)]
    assert crud.get_entitlement(session=db, user_id="u2") is None
    first = crud.get_entitlement(session=db, user_id="u1")
    assert first.status == EntitlementStatus.active
    assert first.updated_at == first_updated

    record = crud.get_audit_record(session=db, key="sub-2_ACTIVATED")
    assert record.user_id == "u2"
    assert record.resolved_status == EntitlementStatus.cancelled
    assert record.extra["conflicting_user_id"] == "u1"


def test_same_user_may_reactivate_with_same_payer(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    gateways.paypal.set_state("sub-2", product_ref=GM_PLAN, payer_identity="a@x.com")
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1"))

    result = engine.process(_event("sub-2", product_ref=GM_PLAN))

    assert result.outcome is ReconcileOutcome.applied
    assert gateways.paypal.cancelled == []
    assert crud.get_entitlement(session=db, user_id="u1").tier == Tier.grandmaster


def test_inactive_holder_does_not_block(db, gateways):
    gateways.paypal.set_state(
        "sub-1", product_ref=CHAMP_PLAN, payer_identity="a@x.com",
        lifecycle=EntitlementStatus.cancelled,
    )
    gateways.paypal.set_state("sub-2", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1", "CANCELLED", user_id="u1"))

    result = engine.process(_event("sub-2", user_id="u2"))

    assert result.outcome is ReconcileOutcome.applied
    assert crud.get_entitlement(session=db, user_id="u2").status == EntitlementStatus.active


def test_conflict_cancel_outage_defers(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    gateways.paypal.set_state("sub-2", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1", user_id="u1"))
    gateways.paypal.cancel_error = ProviderUnavailable("timeout")

    result = engine.process(_event("sub-2", user_id="u2"))

    assert result.outcome is ReconcileOutcome.deferred
    assert crud.get_audit_record(session=db, key="sub-2_ACTIVATED") is None

    gateways.paypal.cancel_error = None
    assert engine.process(_event("sub-2", user_id="u2")).outcome is ReconcileOutcome.conflict


def test_conflict_cancel_refused_defers(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    gateways.paypal.set_state("sub-2", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1", user_id="u1"))
    gateways.paypal.cancel_result = False

    result = engine.process(_event("sub-2", user_id="u2"))

    assert result.outcome is ReconcileOutcome.deferred
    assert crud.get_audit_record(session=db, key="sub-2_ACTIVATED") is None
    assert crud.get_entitlement(session=db, user_id="u2") is None

    gateways.paypal.cancel_result = True
    assert engine.process(_event("sub-2", user_id="u2")).outcome is ReconcileOutcome.conflict


def test_identity_locked_before_lookup(db, gateways, monkeypatch):
    calls = []
    lock = crud.lock_payer_identity
    lookup = crud.find_active_by_payer_identity

    def _lock(**kwargs):
        calls.append(("lock", kwargs["identity"]))
        return lock(**kwargs)

    def _lookup(**kwargs):
        calls.append(("lookup", kwargs["identity"]))
        return lookup(**kwargs)

    monkeypatch.setattr(crud, "lock_payer_identity", _lock)
    monkeypatch.setattr(crud, "find_active_by_payer_identity", _lookup)
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payer_identity="A@x.com")

    ReconciliationEngine(db, gateways).process(_event("sub-1"))

    assert calls == [("lock", "a@x.com"), ("lookup", "a@x.com")]
    assert db.get(PayerIdentityLock, "a@x.com") is not None


def test_identity_lock_row_reused(db):
    first = crud.lock_payer_identity(session=db, identity="a@x.com")
    second = crud.lock_payer_identity(session=db, identity="a@x.com")
    assert first is second
    assert len(db.exec(select(PayerIdentityLock)).all()) == 1


def test_stored_identity_admitted_on_same_lineage(db, gateways, now):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payer_identity="a@x.com")
    gateways.paypal.set_state(
        "sub-2", product_ref=CHAMP_PLAN, payer_identity="a@x.com",
        lifecycle=EntitlementStatus.suspended,
    )
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-2", "SUSPENDED", user_id="u2"))
    engine.process(_event("sub-1", user_id="u1"))

    # provider no longer reports the payer; u2's stored identity still counts
    gateways.paypal.set_state("sub-2", product_ref=CHAMP_PLAN, fetched_at=now + timedelta(minutes=1))
    result = engine.process(_event("sub-2", "RE-ACTIVATED", user_id="u2"))

    assert result.outcome is ReconcileOutcome.conflict
    assert crud.get_entitlement(session=db, user_id="u2").status == EntitlementStatus.suspended


def test_push_cannot_reassign_purchase_echoed_for_another_user(db, gateways):
    gateways.stripe.set_state(
        "sub_v", product_ref="price_champ_monthly", payer_identity="v@x.com", user_ref="victim"
    )
    engine = ReconciliationEngine(db, gateways)
    engine.process(
        _event("sub_v", "customer.subscription.created", provider=Provider.stripe,
               user_id="victim", event_id="evt_1")
    )

    result = engine.process(
        _event("sub_v", "customer.subscription.updated", provider=Provider.stripe,
               user_id="attacker", event_id="evt_2")
    )

    assert result.outcome is ReconcileOutcome.ignored
    assert result.detail == "owner mismatch"
    assert gateways.stripe.cancelled == []
    assert crud.get_entitlement(session=db, user_id="attacker") is None
    assert crud.get_entitlement(session=db, user_id="victim").status == EntitlementStatus.active
    assert crud.get_audit_record(session=db, key="sub_v_evt_2") is None


def test_push_cannot_reassign_indexed_purchase(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN)
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1", user_id="u1"))

    result = engine.process(_event("sub-1", "UPDATED", user_id="u2"))

    assert result.outcome is ReconcileOutcome.ignored
    assert crud.get_entitlement(session=db, user_id="u2") is None
    assert crud.find_user_by_purchase_ref(session=db, purchase_ref="sub-1") == "u1"


def test_notification_owner_disagreeing_with_provider_is_dropped(db, gateways):
    gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly", user_ref="u7")
    result = ReconciliationEngine(db, gateways).process(
        _event("sub_1", "customer.subscription.created", provider=Provider.stripe, user_id="u8")
    )
    assert result.outcome is ReconcileOutcome.ignored
    assert crud.get_entitlement(session=db, user_id="u7") is None
    assert crud.get_entitlement(session=db, user_id="u8") is None


def test_provider_unavailable_releases_reservation(db, gateways):
    gateways.paypal.fail_with("sub-1", ProviderUnavailable("read timeout"))
    engine = ReconciliationEngine(db, gateways)

    result = engine.process(_event("sub-1"))

    assert result.outcome is ReconcileOutcome.deferred
    assert _audits(db) == []
    assert crud.get_entitlement(session=db, user_id="u1") is None

    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN)
    assert engine.process(_event("sub-1")).outcome is ReconcileOutcome.applied
    assert len(_audits(db)) == 1


def test_unknown_subscription_is_dropped(db, gateways):
    engine = ReconciliationEngine(db, gateways)
    result = engine.process(_event("forged"))
    assert result.outcome is ReconcileOutcome.ignored
    assert _audits(db) == []


@pytest.mark.parametrize("order", [("early", "late"), ("late", "early")])
def test_out_of_order_keeps_most_recently_fetched_state(db, gateways, now, order):
    states = {
        "early": dict(fetched_at=now - timedelta(minutes=5), revision="a"),
        "late": dict(
            fetched_at=now, revision="b", lifecycle=EntitlementStatus.payment_failed
        ),
    }
    engine = ReconciliationEngine(db, gateways)
    for name in order:
        gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly", **states[name])
        engine.process(
            _event("sub_1", "customer.subscription.updated", provider=Provider.stripe, event_id=name)
        )

    entitlement = crud.get_entitlement(session=db, user_id="u1")
    assert entitlement.status == EntitlementStatus.payment_failed
    assert entitlement.tier == Tier.free
    if order[0] == "late":
        assert crud.get_audit_record(session=db, key="sub_1_early").extra["skipped"] == "stale"


def test_terminal_lineage_not_revived(db, gateways, now):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, lifecycle=EntitlementStatus.cancelled)
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1", "CANCELLED"))

    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, fetched_at=now + timedelta(minutes=1))
    result = engine.process(_event("sub-1", "RE-ACTIVATED"))

    assert result.outcome is ReconcileOutcome.skipped
    assert result.detail == "terminal"
    assert crud.get_entitlement(session=db, user_id="u1").status == EntitlementStatus.cancelled
    record = crud.get_audit_record(session=db, key="sub-1_RE-ACTIVATED")
    assert record.extra["skipped"] == "terminal"

    # resubscription starts a new lineage
    gateways.paypal.set_state("sub-2", product_ref=CHAMP_PLAN)
    assert engine.process(_event("sub-2")).outcome is ReconcileOutcome.applied
    assert crud.get_entitlement(session=db, user_id="u1").status == EntitlementStatus.active


def test_old_lineage_does_not_demote_current_subscription(db, gateways):
    gateways.paypal.set_state("sub-2", product_ref=GM_PLAN)
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, lifecycle=EntitlementStatus.expired)
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-2", product_ref=GM_PLAN))

    result = engine.process(_event("sub-1", "EXPIRED"))

    assert result.outcome is ReconcileOutcome.skipped
    assert result.detail == "superseded"
    entitlement = crud.get_entitlement(session=db, user_id="u1")
    assert entitlement.subscription_ref == "sub-2"
    assert entitlement.tier == Tier.grandmaster


@pytest.mark.parametrize(
    "lifecycle",
    [
        EntitlementStatus.suspended,
        EntitlementStatus.cancelled,
        EntitlementStatus.expired,
        EntitlementStatus.payment_failed,
    ],
)
def test_tier_is_free_unless_active(db, gateways, lifecycle):
    gateways.stripe.set_state("sub_1", product_ref="price_grandmaster_monthly", lifecycle=lifecycle)
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub_1", "customer.subscription.updated", provider=Provider.stripe))

    entitlement = crud.get_entitlement(session=db, user_id="u1")
    assert entitlement.status == lifecycle
    assert entitlement.tier == Tier.free
    assert entitlement.credits == 2


def test_owner_from_provider_echo(db, gateways):
    gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly", user_ref="u7")
    engine = ReconciliationEngine(db, gateways)
    result = engine.process(
        _event("sub_1", "customer.subscription.created", provider=Provider.stripe, user_id=None)
    )
    assert result.user_id == "u7"
    assert crud.find_user_by_purchase_ref(session=db, purchase_ref="sub_1") == "u7"


def test_unknown_owner_is_dropped(db, gateways):
    gateways.google.set_state("gp-1", product_ref="champ_monthly")
    engine = ReconciliationEngine(db, gateways)
    result = engine.process(
        _event("gp-1", "SUBSCRIPTION_PURCHASED", provider=Provider.google_play, user_id=None,
               event_id="m-1", product_ref="champ_monthly")
    )
    assert result.outcome is ReconcileOutcome.ignored
    assert _audits(db) == []


def test_google_push_owner_from_purchase_index(db, gateways, now):
    gateways.google.set_state("gp-1", product_ref="champ_monthly", revision="GPA.1:1")
    engine = ReconciliationEngine(db, gateways)
    engine.verify(
        provider=Provider.google_play, purchase_ref="gp-1", user_id="u3", product_ref="champ_monthly"
    )
    assert db.get(PurchaseIndex, "gp-1").user_id == "u3"

    gateways.google.set_state(
        "gp-1", product_ref="champ_monthly", cancel_reason="user_canceled",
        fetched_at=now + timedelta(minutes=1), revision="GPA.1:1",
    )
    result = engine.process(
        _event("gp-1", "SUBSCRIPTION_CANCELED", provider=Provider.google_play, user_id=None,
               event_id="m-2", product_ref="champ_monthly")
    )

    assert result.user_id == "u3"
    assert result.status is EntitlementStatus.cancelled
    assert crud.get_entitlement(session=db, user_id="u3").tier == Tier.free


def test_paypal_payment_failure_cancels_subscription(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, lifecycle=EntitlementStatus.payment_failed)
    engine = ReconciliationEngine(db, gateways)
    result = engine.process(_event("sub-1", "BILLING.SUBSCRIPTION.PAYMENT.FAILED"))
    assert result.status is EntitlementStatus.payment_failed
    assert gateways.paypal.cancelled == [("sub-1", PAYMENT_FAILURE_CANCEL_REASON, CHAMP_PLAN)]


def test_paypal_auto_cancel_failure_is_not_raised(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, lifecycle=EntitlementStatus.payment_failed)
    gateways.paypal.cancel_error = ProviderUnavailable("timeout")
    engine = ReconciliationEngine(db, gateways)
    result = engine.process(_event("sub-1", "BILLING.SUBSCRIPTION.PAYMENT.FAILED"))
    assert result.outcome is ReconcileOutcome.applied
    assert crud.get_entitlement(session=db, user_id="u1").status == EntitlementStatus.payment_failed


def test_paypal_auto_cancel_can_be_disabled(db, gateways, monkeypatch):
    monkeypatch.setattr(settings, "PAYPAL_CANCEL_ON_PAYMENT_FAILURE", False)
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, lifecycle=EntitlementStatus.payment_failed)
    ReconciliationEngine(db, gateways).process(_event("sub-1", "BILLING.SUBSCRIPTION.PAYMENT.FAILED"))
    assert gateways.paypal.cancelled == []


def test_handle_notification_end_to_end(db, gateways):
    gateways.paypal.set_state("I-SUB1", product_ref=GM_PLAN, payer_identity="p@x.com")
    raw = json.dumps(
        {
            "id": "WH-9",
            "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
            "resource": {"id": "I-SUB1", "custom_id": "u9", "plan_id": GM_PLAN},
        }
    ).encode()
    result = ReconciliationEngine(db, gateways).handle_notification(Provider.paypal, raw, {})
    assert result.outcome is ReconcileOutcome.applied
    entitlement = crud.get_entitlement(session=db, user_id="u9")
    assert entitlement.tier == Tier.grandmaster
    assert entitlement.payer_identity == "p@x.com"


@pytest.mark.parametrize("raw", [b"{not json", b'{"event_type": "CUSTOMER.DISPUTE.CREATED", "resource": {"id": "x"}}'])
def test_handle_notification_acks_bad_input(db, gateways, raw):
    result = ReconciliationEngine(db, gateways).handle_notification(Provider.paypal, raw, {})
    assert result.outcome is ReconcileOutcome.ignored
    assert gateways.paypal.fetches == []


# ---------------------------------------------------------------- verify calls


def test_verify_activates_and_dedupes_same_revision(db, gateways):
    gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly", revision="active:in_1")
    engine = ReconciliationEngine(db, gateways)

    first = engine.verify(provider=Provider.stripe, purchase_ref="sub_1", user_id="u1")
    second = engine.verify(provider=Provider.stripe, purchase_ref="sub_1", user_id="u1")

    assert first.outcome is ReconcileOutcome.applied
    assert first.tier is Tier.champ
    assert second.outcome is ReconcileOutcome.duplicate
    assert second.status is EntitlementStatus.active
    assert second.tier is Tier.champ
    audits = _audits(db)
    assert [a.key for a in audits] == ["sub_1_verify-active:in_1"]
    assert audits[0].source == AuditSource.verify_call


def test_verify_refuses_purchase_of_another_account(db, gateways):
    gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly")
    engine = ReconciliationEngine(db, gateways)
    engine.verify(provider=Provider.stripe, purchase_ref="sub_1", user_id="u1")

    with pytest.raises(AppError) as exc:
        engine.verify(provider=Provider.stripe, purchase_ref="sub_1", user_id="u2")
    assert exc.value.status_code == 409
    assert crud.get_entitlement(session=db, user_id="u2") is None


def test_verify_refuses_purchase_made_for_another_account(db, gateways):
    gateways.stripe.set_state("sub_1", product_ref="price_champ_monthly", user_ref="u1")
    with pytest.raises(AppError) as exc:
        ReconciliationEngine(db, gateways).verify(
            provider=Provider.stripe, purchase_ref="sub_1", user_id="u2"
        )
    assert exc.value.code == 409101


def test_verify_integrity_failure_recorded_and_rejected(db, gateways):
    gateways.google.requires_attestation = True
    gateways.google.set_state("gp-1", product_ref="champ_monthly")
    engine = ReconciliationEngine(db, gateways)

    with pytest.raises(AppError) as exc:
        engine.verify(
            provider=Provider.google_play, purchase_ref="gp-1", user_id="u5",
            product_ref="champ_monthly", attestation="bad",
        )

    assert exc.value.status_code == 403
    record = crud.get_audit_record(session=db, key="gp-1_verify-r1-untrusted")
    assert record.resolved_status == EntitlementStatus.integrity_failed
    assert crud.get_entitlement(session=db, user_id="u5") is None


def test_verify_trusted_attestation(db, gateways):
    gateways.google.requires_attestation = True
    gateways.google.verdicts["good"] = AttestationVerdict(trusted=True)
    gateways.google.set_state("gp-1", product_ref="champ_monthly")
    result = ReconciliationEngine(db, gateways).verify(
        provider=Provider.google_play, purchase_ref="gp-1", user_id="u5",
        product_ref="champ_monthly", attestation="good",
    )
    assert result.status is EntitlementStatus.active
    assert result.tier is Tier.champ


def test_verify_provider_outage_raises(db, gateways):
    gateways.paypal.fail_with("sub-1", ProviderUnavailable("timeout"))
    with pytest.raises(ProviderUnavailable):
        ReconciliationEngine(db, gateways).verify(
            provider=Provider.paypal, purchase_ref="sub-1", user_id="u1"
        )
    assert _audits(db) == []


def test_verify_unconfirmed_payment_is_pending(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN, payment_state=PaymentState.pending)
    result = ReconciliationEngine(db, gateways).verify(
        provider=Provider.paypal, purchase_ref="sub-1", user_id="u1"
    )
    assert result.status is EntitlementStatus.pending
    assert not result.entitled


# ---------------------------------------------------------------- user cancellation


def test_cancel_for_user(db, gateways):
    gateways.paypal.set_state("sub-1", product_ref=CHAMP_PLAN)
    engine = ReconciliationEngine(db, gateways)
    engine.process(_event("sub-1"))

    result = engine.cancel_for_user("u1")

    assert result.provider is Provider.paypal
    assert gateways.paypal.cancelled[0][0] == "sub-1"
    # entitlement changes only when the provider notifies
    assert crud.get_entitlement(session=db, user_id="u1").status == EntitlementStatus.active


def test_cancel_without_subscription(db, gateways):
    with pytest.raises(AppError) as exc:
        ReconciliationEngine(db, gateways).cancel_for_user("nobody")
    assert exc.value.status_code == 404
