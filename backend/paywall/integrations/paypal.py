"""
PayPal 订阅网关

文档: https://developer.paypal.com/docs/api/subscriptions/v1/
Webhook 校验: https://developer.paypal.com/docs/api/webhooks/v1/#verify-webhook-signature
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from paywall.api.errors import ProviderUnavailable
from paywall.core.config import settings
from paywall.enums import EntitlementStatus, PaymentState

from .base import HttpGateway, SubscriptionState, parse_rfc3339
from .token_cache import AccessTokenCache

logger = logging.getLogger(__name__)

# PayPal 订阅状态 → 明确的生命周期状态（ACTIVE 走到期/扣款判断）
_LIFECYCLE = {
    "SUSPENDED": EntitlementStatus.suspended,
    "CANCELLED": EntitlementStatus.cancelled,
    "EXPIRED": EntitlementStatus.expired,
}

# verify-webhook-signature 需要转发的推送头
_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalGateway(HttpGateway):
    """PayPal REST API 封装"""

    provider_name = "paypal"

    def __init__(
        self,
        *,
        client_id: str | None,
        secret: str | None,
        webhook_id: str | None = None,
        base_url: str | None = None,
        token_cache: AccessTokenCache | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url=base_url or settings.PAYPAL_API_BASE, **kwargs)
        self._client_id = client_id
        self._secret = secret
        self.webhook_id = webhook_id
        self._tokens = token_cache or AccessTokenCache(
            skew_seconds=settings.ACCESS_TOKEN_REFRESH_SKEW_SECONDS
        )

    def _fetch_access_token(self) -> tuple[str, int]:
        if not self._client_id or not self._secret:
            raise ProviderUnavailable("PayPal credentials not configured")
        response = self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code != 200:
            logger.error(f"PayPal token error: {response.status_code} {response.text}")
            raise ProviderUnavailable("PayPal authentication failed")
        data = self._json(response)
        token = data.get("access_token")
        if not token:
            raise ProviderUnavailable("PayPal token response without access_token")
        return str(token), int(data.get("expires_in") or 0)

    def _authorized(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """带访问令牌发送请求；401 时丢弃缓存令牌重试一次"""
        for _ in range(2):
            token = self._tokens.get(self._fetch_access_token)
            response = self._send(
                method,
                path,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                **kwargs,
            )
            if response.status_code != 401:
                return response
            logger.warning("PayPal rejected cached access token, refreshing")
            self._tokens.invalidate()
        raise ProviderUnavailable("PayPal authentication failed")

    def fetch_subscription_state(
        self, subscription_ref: str, purchase_ref: str, product_ref: str | None = None
    ) -> SubscriptionState:
        response = self._authorized("GET", f"/v1/billing/subscriptions/{subscription_ref}")
        self._raise_for_lookup(response, subscription_ref)
        return self._to_state(self._json(response))

    def _to_state(self, data: dict[str, Any]) -> SubscriptionState:
        status = str(data.get("status") or "").upper()
        billing_info = data.get("billing_info") or {}
        last_payment = billing_info.get("last_payment") or {}
        failed_payments = int(billing_info.get("failed_payments_count") or 0)
        subscriber = data.get("subscriber") or {}

        lifecycle = _LIFECYCLE.get(status)
        if lifecycle is None and status == "ACTIVE" and failed_payments > 0:
            lifecycle = EntitlementStatus.payment_failed

        # APPROVAL_PENDING / APPROVED 尚未扣款
        payment_state = PaymentState.received if status == "ACTIVE" else PaymentState.pending
        cancel_reason = data.get("status_change_note") if status == "CANCELLED" else None

        return SubscriptionState(
            expiry=parse_rfc3339(billing_info.get("next_billing_time")),
            payment_state=payment_state,
            cancel_reason=cancel_reason,
            lifecycle=lifecycle,
            payer_identity=subscriber.get("email_address"),
            product_ref=data.get("plan_id"),
            user_ref=data.get("custom_id"),
            revision=f"{status}:{last_payment.get('time') or ''}:{failed_payments}",
            raw={
                "status": status,
                "plan_id": data.get("plan_id"),
                "next_billing_time": billing_info.get("next_billing_time"),
                "failed_payments_count": failed_payments,
            },
        )

    def cancel_subscription(
        self, subscription_ref: str, reason: str, product_ref: str | None = None
    ) -> bool:
        response = self._authorized(
            "POST",
            f"/v1/billing/subscriptions/{subscription_ref}/cancel",
            json={"reason": reason[:128]},
        )
        if response.status_code == 204:
            logger.info(f"PayPal subscription {subscription_ref} cancelled: {reason}")
            return True
        # 422 SUBSCRIPTION_STATUS_INVALID: 已经是取消/过期状态
        if response.status_code == 422:
            logger.info(f"PayPal subscription {subscription_ref} already inactive")
            return True
        logger.warning(
            f"PayPal cancel {subscription_ref} unexpected response: "
            f"{response.status_code} {response.text}"
        )
        return False

    def verify_webhook_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        """
        调用 PayPal 接口校验推送签名

        Args:
            headers: 推送请求头（键为小写）
            event: 已解析的推送 JSON

        Returns:
            verification_status 是否为 SUCCESS
        """
        body: dict[str, Any] = {
            name: headers.get(header, "") for name, header in _SIGNATURE_HEADERS.items()
        }
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event
        response = self._authorized(
            "POST", "/v1/notifications/verify-webhook-signature", json=body
        )
        if response.status_code != 200:
            logger.warning(f"PayPal signature check error: {response.status_code} {response.text}")
            return False
        return self._json(response).get("verification_status") == "SUCCESS"
