"""
Stripe 订阅网关

文档: https://docs.stripe.com/api/subscriptions
通过官方 stripe SDK 的 StripeClient 调用，密钥按网关实例传入，不修改全局 stripe.api_key。
"""
from __future__ import annotations

import logging
from typing import Any

import stripe

from paywall.api.errors import MalformedPayload, ProviderUnavailable
from paywall.core.config import settings
from paywall.enums import EntitlementStatus, PaymentState

from .base import HttpGateway, SubscriptionState, parse_epoch

logger = logging.getLogger(__name__)

_LIFECYCLE = {
    "canceled": EntitlementStatus.cancelled,
    "past_due": EntitlementStatus.payment_failed,
    "unpaid": EntitlementStatus.payment_failed,
    "paused": EntitlementStatus.suspended,
    "incomplete_expired": EntitlementStatus.expired,
}

_PAYMENT_STATE = {
    "active": PaymentState.received,
    "trialing": PaymentState.free_trial,
}


class StripeGateway(HttpGateway):
    """
    Stripe 订阅接口封装

    Args:
        secret_key: Stripe 密钥（sk_...）
        subscriptions: 可选的订阅服务对象（测试时注入，默认由 StripeClient 提供）
    """

    provider_name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str | None,
        base_url: str | None = None,
        subscriptions: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url=base_url or settings.STRIPE_API_BASE, **kwargs)
        self._secret_key = secret_key
        self._subscriptions = subscriptions

    def _service(self) -> Any:
        if self._subscriptions is None:
            if not self._secret_key:
                raise ProviderUnavailable("Stripe secret key not configured")
            client = stripe.StripeClient(
                self._secret_key,
                base_addresses={"api": self._base_url},
                http_client=stripe.RequestsClient(timeout=self._timeout),
            )
            self._subscriptions = client.v1.subscriptions
        return self._subscriptions

    def _call(self, operation: str, subscription_ref: str, params: dict[str, Any]) -> Any:
        """
        调用订阅服务

        只对连接错误重试；认证失败、限流和 Stripe 侧错误统一转换为 ProviderUnavailable。
        其余 StripeError 原样抛出，由调用方决定含义。
        """
        method = getattr(self._service(), operation)
        try:
            for attempt in self._retrying(stripe.APIConnectionError):
                with attempt:
                    return method(subscription_ref, params=params)
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe {operation} {subscription_ref} failed: {e}")
            raise ProviderUnavailable(f"Stripe unreachable: {e}")
        except stripe.AuthenticationError:
            logger.error("Stripe rejected the configured secret key")
            raise ProviderUnavailable("Stripe authentication failed")
        except (stripe.RateLimitError, stripe.APIError) as e:
            logger.error(f"Stripe {operation} {subscription_ref} error: {e}")
            raise ProviderUnavailable(f"Stripe returned {e.http_status}")

    def fetch_subscription_state(
        self, subscription_ref: str, purchase_ref: str, product_ref: str | None = None
    ) -> SubscriptionState:
        try:
            data = self._call("retrieve", subscription_ref, {"expand": ["customer"]})
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                raise MalformedPayload(f"stripe subscription {subscription_ref} not found")
            logger.error(f"Stripe lookup {subscription_ref} error: {e.http_status} {e}")
            raise ProviderUnavailable(f"Stripe returned {e.http_status}")
        except stripe.StripeError as e:
            logger.error(f"Stripe lookup {subscription_ref} error: {e.http_status} {e}")
            raise ProviderUnavailable(f"Stripe returned {e.http_status}")
        return self._to_state(data)

    def _to_state(self, data: dict[str, Any]) -> SubscriptionState:
        status = str(data.get("status") or "")
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        # 新版 API 把 current_period_end 挪到了订阅项上
        period_end = data.get("current_period_end") or first_item.get("current_period_end")

        cancel_reason = None
        if data.get("cancel_at_period_end") or data.get("canceled_at"):
            details = data.get("cancellation_details") or {}
            cancel_reason = details.get("reason") or "cancellation_requested"

        customer = data.get("customer")
        payer_identity = customer.get("email") if isinstance(customer, dict) else None
        latest_invoice = data.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            latest_invoice = latest_invoice.get("id")

        return SubscriptionState(
            expiry=parse_epoch(period_end),
            payment_state=_PAYMENT_STATE.get(status, PaymentState.pending),
            cancel_reason=cancel_reason,
            lifecycle=_LIFECYCLE.get(status),
            payer_identity=payer_identity,
            product_ref=price.get("id"),
            user_ref=(data.get("metadata") or {}).get("uid"),
            revision=f"{status}:{latest_invoice or ''}:{period_end or ''}",
            raw={
                "status": status,
                "current_period_end": period_end,
                "cancel_at_period_end": bool(data.get("cancel_at_period_end")),
                "latest_invoice": latest_invoice,
            },
        )

    def cancel_subscription(
        self, subscription_ref: str, reason: str, product_ref: str | None = None
    ) -> bool:
        params = {"prorate": False, "cancellation_details": {"comment": reason}}
        try:
            self._call("cancel", subscription_ref, params)
        except stripe.StripeError as e:
            logger.warning(
                f"Stripe cancel {subscription_ref} unexpected response: {e.http_status} {e}"
            )
            return False
        logger.info(f"Stripe subscription {subscription_ref} cancelled: {reason}")
        return True
