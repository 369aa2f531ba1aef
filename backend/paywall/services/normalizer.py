"""
Event normalizer: provider-shaped push body -> ``BillingEvent``.

Each provider has one normalizer function behind ``normalize``; authenticity is
checked first and fields are only read afterwards. Nested envelopes (Pub/Sub
base64 ``message.data``) are unwrapped completely before extraction.

Raises ``SignatureInvalid``, ``MalformedPayload`` or ``UnsupportedNotification``.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from paywall.api.errors import MalformedPayload, UnsupportedNotification
from paywall.core.config import settings
from paywall.enums import EntitlementStatus, Provider
from paywall.integrations.base import parse_epoch, parse_rfc3339
from paywall.models.base import utc_now

from .events import BillingEvent
from .signatures import (
    verify_google_push_token,
    verify_paypal_signature,
    verify_stripe_signature,
)

logger = logging.getLogger(__name__)

_PAYPAL_KINDS: dict[str, EntitlementStatus | None] = {
    "BILLING.SUBSCRIPTION.CREATED": EntitlementStatus.pending,
    "BILLING.SUBSCRIPTION.ACTIVATED": EntitlementStatus.active,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EntitlementStatus.active,
    "BILLING.SUBSCRIPTION.UPDATED": None,
    "BILLING.SUBSCRIPTION.CANCELLED": EntitlementStatus.cancelled,
    "BILLING.SUBSCRIPTION.SUSPENDED": EntitlementStatus.suspended,
    "BILLING.SUBSCRIPTION.EXPIRED": EntitlementStatus.expired,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": EntitlementStatus.payment_failed,
    "PAYMENT.SALE.COMPLETED": EntitlementStatus.active,
}

_STRIPE_KINDS: dict[str, EntitlementStatus | None] = {
    "checkout.session.completed": EntitlementStatus.active,
    "customer.subscription.created": None,
    "customer.subscription.updated": None,
    "customer.subscription.deleted": EntitlementStatus.cancelled,
    "customer.subscription.paused": EntitlementStatus.suspended,
    "customer.subscription.resumed": EntitlementStatus.active,
    "invoice.paid": EntitlementStatus.active,
    "invoice.payment_succeeded": EntitlementStatus.active,
    "invoice.payment_failed": EntitlementStatus.payment_failed,
}

# RTDN subscriptionNotification.notificationType
_GOOGLE_KINDS: dict[int, tuple[str, EntitlementStatus | None]] = {
    1: ("SUBSCRIPTION_RECOVERED", EntitlementStatus.active),
    2: ("SUBSCRIPTION_RENEWED", EntitlementStatus.active),
    3: ("SUBSCRIPTION_CANCELED", EntitlementStatus.cancelled),
    4: ("SUBSCRIPTION_PURCHASED", EntitlementStatus.active),
    5: ("SUBSCRIPTION_ON_HOLD", EntitlementStatus.suspended),
    6: ("SUBSCRIPTION_IN_GRACE_PERIOD", EntitlementStatus.payment_failed),
    7: ("SUBSCRIPTION_RESTARTED", EntitlementStatus.active),
    8: ("SUBSCRIPTION_PRICE_CHANGE_CONFIRMED", None),
    9: ("SUBSCRIPTION_DEFERRED", None),
    10: ("SUBSCRIPTION_PAUSED", EntitlementStatus.suspended),
    11: ("SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED", None),
    12: ("SUBSCRIPTION_REVOKED", EntitlementStatus.cancelled),
    13: ("SUBSCRIPTION_EXPIRED", EntitlementStatus.expired),
    20: ("SUBSCRIPTION_PENDING_PURCHASE_CANCELED", EntitlementStatus.cancelled),
}


def _load_json(raw: bytes | str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise MalformedPayload(f"{what} is not valid JSON")
    if not isinstance(data, dict):
        raise MalformedPayload(f"{what} is not a JSON object")
    return data


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def normalize_paypal(raw: bytes, headers: Mapping[str, str], gateway: Any) -> BillingEvent:
    body = _load_json(raw, "PayPal webhook body")
    verify_paypal_signature(gateway, headers, body)

    event_type = body.get("event_type")
    resource = body.get("resource")
    if not event_type or not isinstance(resource, dict) or not resource.get("id"):
        raise MalformedPayload("PayPal webhook without event_type or resource.id")
    if event_type not in _PAYPAL_KINDS:
        raise UnsupportedNotification(str(event_type))

    if event_type == "PAYMENT.SALE.COMPLETED":
        # Sale resources point at their subscription through billing_agreement_id
        subscription_ref = resource.get("billing_agreement_id")
        if not subscription_ref:
            raise UnsupportedNotification("PAYMENT.SALE.COMPLETED without subscription")
    else:
        subscription_ref = resource["id"]

    subscriber = _dict(resource.get("subscriber"))
    return BillingEvent(
        provider=Provider.paypal,
        subscription_ref=str(subscription_ref),
        purchase_ref=str(subscription_ref),
        notification_kind=str(event_type),
        user_id=resource.get("custom_id") or None,
        product_ref=resource.get("plan_id"),
        payer_identity=subscriber.get("email_address"),
        event_id=body.get("id"),
        declared_status=_PAYPAL_KINDS[event_type],
        occurred_at=parse_rfc3339(body.get("create_time")) or utc_now(),
        extra={"resource_type": body.get("resource_type")},
    )


def _stripe_subscription_ref(event_type: str, obj: dict[str, Any]) -> str | None:
    if event_type.startswith("customer.subscription."):
        return obj.get("id")
    if event_type == "checkout.session.completed":
        return obj.get("subscription")
    # invoice.*: older API versions carry it top-level, newer under parent
    parent = _dict(_dict(obj.get("parent")).get("subscription_details"))
    return obj.get("subscription") or parent.get("subscription")


def _stripe_user_id(event_type: str, obj: dict[str, Any]) -> str | None:
    metadata = _dict(obj.get("metadata"))
    if event_type == "checkout.session.completed":
        return metadata.get("uid") or obj.get("client_reference_id")
    if event_type.startswith("invoice."):
        details = _dict(obj.get("subscription_details")) or _dict(
            _dict(obj.get("parent")).get("subscription_details")
        )
        return _dict(details.get("metadata")).get("uid")
    return metadata.get("uid")


def normalize_stripe(raw: bytes, headers: Mapping[str, str], gateway: Any) -> BillingEvent:
    verify_stripe_signature(
        raw,
        headers.get("stripe-signature"),
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    )
    body = _load_json(raw, "Stripe event body")

    event_type = body.get("type")
    obj = _dict(body.get("data")).get("object")
    if not event_type or not isinstance(obj, dict):
        raise MalformedPayload("Stripe event without type or data.object")
    if event_type not in _STRIPE_KINDS:
        raise UnsupportedNotification(str(event_type))

    subscription_ref = _stripe_subscription_ref(event_type, obj)
    if not subscription_ref:
        # one-off payments and invoices outside a subscription
        raise UnsupportedNotification(f"{event_type} without subscription")

    customer_details = _dict(obj.get("customer_details"))
    payer = customer_details.get("email") or obj.get("customer_email")
    return BillingEvent(
        provider=Provider.stripe,
        subscription_ref=str(subscription_ref),
        purchase_ref=str(subscription_ref),
        notification_kind=str(event_type),
        user_id=_stripe_user_id(event_type, obj),
        payer_identity=payer,
        event_id=body.get("id"),
        declared_status=_STRIPE_KINDS[event_type],
        occurred_at=parse_epoch(body.get("created")) or utc_now(),
        extra={"livemode": body.get("livemode")},
    )


def normalize_google_play(raw: bytes, headers: Mapping[str, str], gateway: Any) -> BillingEvent:
    verify_google_push_token(
        headers.get("authorization"),
        settings.GOOGLE_PUBSUB_AUDIENCE,
        expected_email=settings.GOOGLE_PUBSUB_SERVICE_ACCOUNT,
    )
    envelope = _load_json(raw, "Pub/Sub push body")
    message = envelope.get("message")
    if not isinstance(message, dict) or not message.get("data"):
        raise MalformedPayload("Pub/Sub push without message.data")

    try:
        decoded = base64.b64decode(message["data"], validate=True)
    except (binascii.Error, TypeError, ValueError):
        raise MalformedPayload("Pub/Sub message.data is not base64")
    notification = _load_json(decoded, "developer notification")

    package_name = notification.get("packageName")
    if settings.GOOGLE_PLAY_PACKAGE_NAME and package_name != settings.GOOGLE_PLAY_PACKAGE_NAME:
        raise MalformedPayload(f"notification for unexpected package {package_name}")

    if "testNotification" in notification:
        raise UnsupportedNotification("TEST_NOTIFICATION")
    sub = notification.get("subscriptionNotification")
    if not isinstance(sub, dict):
        if "oneTimeProductNotification" in notification:
            raise UnsupportedNotification("ONE_TIME_PRODUCT_NOTIFICATION")
        if "voidedPurchaseNotification" in notification:
            raise UnsupportedNotification("VOIDED_PURCHASE_NOTIFICATION")
        raise MalformedPayload("developer notification without subscriptionNotification")

    token = sub.get("purchaseToken")
    product = sub.get("subscriptionId")
    kind_code = sub.get("notificationType")
    if not token or not product or kind_code is None:
        raise MalformedPayload("subscriptionNotification missing purchaseToken/subscriptionId/type")
    try:
        kind, declared = _GOOGLE_KINDS[int(kind_code)]
    except (KeyError, TypeError, ValueError):
        raise UnsupportedNotification(f"SUBSCRIPTION_NOTIFICATION_{kind_code}")

    return BillingEvent(
        provider=Provider.google_play,
        subscription_ref=str(token),
        purchase_ref=str(token),
        notification_kind=kind,
        product_ref=str(product),
        event_id=message.get("messageId") or message.get("message_id"),
        declared_status=declared,
        occurred_at=parse_epoch(notification.get("eventTimeMillis"), millis=True)
        or utc_now(),
        extra={"package_name": package_name},
    )


_NORMALIZERS: dict[Provider, Callable[[bytes, Mapping[str, str], Any], BillingEvent]] = {
    Provider.paypal: normalize_paypal,
    Provider.stripe: normalize_stripe,
    Provider.google_play: normalize_google_play,
}


def normalize(
    raw_payload: bytes,
    provider: Provider,
    headers: Mapping[str, str],
    gateway: Any = None,
) -> BillingEvent:
    """
    Args:
        raw_payload: request body bytes exactly as received
        provider: which endpoint the body arrived on
        headers: request headers with lower-cased names (verification material)
        gateway: provider gateway, needed where verification is a provider call
    """
    event = _NORMALIZERS[provider](raw_payload, headers, gateway)
    logger.info(
        f"Normalized {provider.value} {event.notification_kind} "
        f"subscription={event.subscription_ref} event_id={event.event_id}"
    )
    return event
