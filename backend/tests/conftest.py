from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from paywall.api.deps import get_db, get_gateways
from paywall.api.errors import MalformedPayload
from paywall.enums import PaymentState, Provider
from paywall.integrations import AttestationVerdict, SubscriptionState
from paywall.main import app
from paywall.models import AuditRecord, Entitlement, PayerIdentityLock, PurchaseIndex

NOW = datetime.now(timezone.utc).replace(microsecond=0)


class FakeGateway:
    """In-memory provider: states keyed by subscription ref, cancellations recorded."""

    def __init__(self, provider: Provider, *, requires_attestation: bool = False) -> None:
        self.provider = provider
        self.requires_attestation = requires_attestation
        self.webhook_id = None
        self.states: dict[str, SubscriptionState | Exception] = {}
        self.verdicts: dict[str, AttestationVerdict] = {}
        self.fetches: list[str] = []
        self.cancelled: list[tuple[str, str, str | None]] = []
        self.cancel_error: Exception | None = None
        self.cancel_result = True

    def set_state(
        self,
        subscription_ref: str,
        *,
        expiry: datetime | None = NOW + timedelta(days=30),
        payment_state: PaymentState = PaymentState.received,
        fetched_at: datetime = NOW,
        revision: str = "r1",
        **fields: Any,
    ) -> SubscriptionState:
        state = SubscriptionState(
            expiry=expiry,
            payment_state=payment_state,
            fetched_at=fetched_at,
            revision=revision,
            **fields,
        )
        self.states[subscription_ref] = state
        return state

    def fail_with(self, subscription_ref: str, error: Exception) -> None:
        self.states[subscription_ref] = error

    def fetch_subscription_state(
        self, subscription_ref: str, purchase_ref: str, product_ref: str | None = None
    ) -> SubscriptionState:
        self.fetches.append(subscription_ref)
        value = self.states.get(subscription_ref)
        if value is None:
            raise MalformedPayload(f"unknown subscription {subscription_ref}")
        if isinstance(value, Exception):
            raise value
        return value

    def cancel_subscription(
        self, subscription_ref: str, reason: str, product_ref: str | None = None
    ) -> bool:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append((subscription_ref, reason, product_ref))
        return self.cancel_result

    def verify_attestation(self, token: str) -> AttestationVerdict:
        return self.verdicts.get(token, AttestationVerdict(trusted=False, detail="unknown token"))


class FakeGateways:
    def __init__(self) -> None:
        self.by_provider = {p: FakeGateway(p) for p in Provider}

    def __call__(self, provider: Provider) -> FakeGateway:
        return self.by_provider[provider]

    @property
    def paypal(self) -> FakeGateway:
        return self.by_provider[Provider.paypal]

    @property
    def stripe(self) -> FakeGateway:
        return self.by_provider[Provider.stripe]

    @property
    def google(self) -> FakeGateway:
        return self.by_provider[Provider.google_play]


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        session.exec(delete(AuditRecord))
        session.exec(delete(PurchaseIndex))
        session.exec(delete(Entitlement))
        session.exec(delete(PayerIdentityLock))
        session.commit()


@pytest.fixture(scope="function")
def gateways() -> FakeGateways:
    return FakeGateways()


@pytest.fixture(scope="function")
def client(engine, db, gateways) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gateways] = lambda: gateways
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def now() -> datetime:
    return NOW
