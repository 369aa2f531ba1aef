"""
支付渠道网关注册表

每个渠道懒加载一个网关实例，访问令牌缓存归各自的网关所有。
"""
from __future__ import annotations

import threading

from paywall.core.config import settings
from paywall.enums import Provider

from .base import AttestationVerdict, ProviderGateway, SubscriptionState
from .google_play import GooglePlayGateway
from .paypal import PayPalGateway
from .stripe import StripeGateway

_lock = threading.Lock()
_gateways: dict[Provider, ProviderGateway] = {}


def _build(provider: Provider) -> ProviderGateway:
    if provider is Provider.paypal:
        return PayPalGateway(
            client_id=settings.PAYPAL_CLIENT_ID,
            secret=settings.PAYPAL_SECRET,
            webhook_id=settings.PAYPAL_WEBHOOK_ID,
        )
    if provider is Provider.stripe:
        return StripeGateway(secret_key=settings.STRIPE_SECRET_KEY)
    return GooglePlayGateway(
        package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
        service_account_email=settings.GOOGLE_SERVICE_ACCOUNT_EMAIL,
        private_key=settings.GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY,
        require_integrity=settings.GOOGLE_PLAY_REQUIRE_INTEGRITY,
    )


def get_gateway(provider: Provider) -> ProviderGateway:
    """
    获取渠道网关实例（懒加载）

    Args:
        provider: 支付渠道

    Returns:
        对应渠道的网关
    """
    with _lock:
        gateway = _gateways.get(provider)
        if gateway is None:
            gateway = _build(provider)
            _gateways[provider] = gateway
        return gateway


def reset_gateways() -> None:
    """丢弃已创建的网关（配置变更后或测试中使用）"""
    with _lock:
        _gateways.clear()


__all__ = [
    "AttestationVerdict",
    "GooglePlayGateway",
    "PayPalGateway",
    "ProviderGateway",
    "StripeGateway",
    "SubscriptionState",
    "get_gateway",
    "reset_gateways",
]
