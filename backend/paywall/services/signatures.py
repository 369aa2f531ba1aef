"""
Push authenticity checks, run before any field of a payload is trusted.

- Stripe: ``Stripe-Signature`` header, checked by the ``stripe`` SDK.
- Google Play: Pub/Sub push OIDC bearer token signed by Google.
- PayPal: delegated to the gateway (``verify-webhook-signature`` API).

A provider whose verification secret is not configured is only accepted in the
local environment, where the check is skipped with a warning so development can
post unsigned payloads. Everywhere else the push is rejected.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import jwt
import stripe

from paywall.api.errors import MalformedPayload, ProviderUnavailable, SignatureInvalid
from paywall.core.config import settings

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
_GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


def _skip_unconfigured(what: str) -> None:
    if settings.ENVIRONMENT != "local":
        logger.error(f"{what} not configured in {settings.ENVIRONMENT}, rejecting push")
        raise SignatureInvalid(f"{what} not configured")
    logger.warning(f"{what} not configured, skipping signature verification")


def verify_stripe_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
) -> None:
    if not secret:
        _skip_unconfigured("Stripe webhook secret")
        return
    if not signature_header:
        raise SignatureInvalid("missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(f"Stripe signature rejected: {e}")
    except ValueError as e:
        raise MalformedPayload(f"Stripe event body is not valid JSON: {e}")


@lru_cache(maxsize=1)
def _google_jwks_client() -> jwt.PyJWKClient:
    return jwt.PyJWKClient(GOOGLE_CERTS_URL)


def verify_google_push_token(
    authorization: str | None,
    audience: str | None,
    *,
    expected_email: str | None = None,
    jwks_client: Any | None = None,
) -> None:
    """Validate the OIDC token Pub/Sub attaches to authenticated push deliveries."""
    if not audience:
        _skip_unconfigured("Pub/Sub push audience")
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise SignatureInvalid("missing Pub/Sub push bearer token")
    token = authorization[len("Bearer "):]

    client = jwks_client or _google_jwks_client()
    try:
        signing_key = client.get_signing_key_from_jwt(token)
        claims = jwt.decode(token, signing_key.key, algorithms=["RS256"], audience=audience)
    except jwt.PyJWKClientConnectionError as e:
        raise ProviderUnavailable(f"Google certs unreachable: {e}")
    except jwt.PyJWTError as e:
        raise SignatureInvalid(f"Pub/Sub push token rejected: {e}")

    if claims.get("iss") not in _GOOGLE_ISSUERS:
        raise SignatureInvalid(f"unexpected push token issuer {claims.get('iss')}")
    if expected_email and (
        claims.get("email") != expected_email or not claims.get("email_verified")
    ):
        raise SignatureInvalid("push token issued for an unexpected service account")


def verify_paypal_signature(
    gateway: Any, headers: Mapping[str, str], event: dict[str, Any]
) -> None:
    if not getattr(gateway, "webhook_id", None):
        _skip_unconfigured("PayPal webhook id")
        return
    if not headers.get("paypal-transmission-sig"):
        raise SignatureInvalid("missing PayPal transmission signature")
    if not gateway.verify_webhook_signature(headers, event):
        raise SignatureInvalid("PayPal signature verification failed")
