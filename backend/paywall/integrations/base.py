"""
支付渠道网关基础模块

定义网关协议、渠道订阅快照数据类，以及带超时和重试的 HTTP 发送逻辑。
所有渠道请求都有超时上限；网络错误、超时和 5xx 统一转换为 ProviderUnavailable。
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from paywall.api.errors import MalformedPayload, ProviderUnavailable
from paywall.core.config import settings
from paywall.enums import EntitlementStatus, PaymentState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionState:
    """
    渠道订阅实时快照

    由网关从渠道接口重新拉取，作为对账的权威数据。
    """
    expiry: datetime | None  # 当前周期结束时间（终身/未知为 None）
    payment_state: PaymentState  # 扣款状态
    cancel_reason: str | None = None  # 取消原因（未取消为 None）
    lifecycle: EntitlementStatus | None = None  # 渠道明确声明的生命周期状态
    payer_identity: str | None = None  # 付款身份（邮箱）
    product_ref: str | None = None  # 产品/计划 ID
    user_ref: str | None = None  # 渠道回传的用户 ID（如 custom_id / metadata.uid）
    revision: str = ""  # 账期/状态标记，用于客户端校验的幂等键
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw: dict[str, Any] = field(default_factory=dict)  # 渠道原始响应（审计诊断用）


@dataclass(frozen=True)
class AttestationVerdict:
    """设备/应用完整性校验结果"""
    trusted: bool
    detail: str | None = None


class ProviderGateway(Protocol):
    """支付渠道网关协议"""

    requires_attestation: bool

    def fetch_subscription_state(
        self, subscription_ref: str, purchase_ref: str, product_ref: str | None = None
    ) -> SubscriptionState:
        ...

    def cancel_subscription(
        self, subscription_ref: str, reason: str, product_ref: str | None = None
    ) -> bool:
        ...

    def verify_attestation(self, token: str) -> AttestationVerdict:
        ...


def parse_rfc3339(value: Any) -> datetime | None:
    """解析 RFC 3339 时间字符串（PayPal 使用）"""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable timestamp {value!r}")
        return None


def parse_epoch(value: Any, *, millis: bool = False) -> datetime | None:
    """解析秒/毫秒时间戳（Stripe 使用秒，Google 使用毫秒字符串）"""
    if value is None:
        return None
    try:
        ts = int(value)
    except (TypeError, ValueError):
        return None
    if millis:
        ts_float = ts / 1000
    else:
        ts_float = float(ts)
    return datetime.fromtimestamp(ts_float, tz=timezone.utc)


class HttpGateway:
    """
    渠道 HTTP 网关基类

    Args:
        base_url: 渠道 API 地址
        timeout: 单次请求超时（秒）
        max_attempts: 网络错误时的最大尝试次数
        retry_wait: 重试间隔（秒）
        transport: 可选的 httpx 传输层（测试时注入 MockTransport）
    """

    provider_name = "provider"
    requires_attestation = False

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_wait: float = 0.2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self._max_attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
        self._retry_wait = retry_wait
        self._transport = transport

    def _retrying(self, *exception_types: type[BaseException]) -> Retrying:
        """按网关配置的次数和间隔重试指定异常，耗尽后原样抛出"""
        return Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_wait),
            retry=retry_if_exception_type(exception_types),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        发送请求

        只对网络层错误（含超时）重试；重试耗尽后抛出 ProviderUnavailable。
        5xx 直接视为渠道不可用。
        """
        if not url.startswith("http"):
            url = f"{self._base_url}{url}"
        try:
            for attempt in self._retrying(httpx.TransportError):
                with attempt:
                    with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                        response = client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"{self.provider_name} request {method} {url} failed: {e}")
            raise ProviderUnavailable(f"{self.provider_name} unreachable: {e}")

        if response.status_code >= 500:
            logger.error(
                f"{self.provider_name} request {method} {url} returned {response.status_code}"
            )
            raise ProviderUnavailable(f"{self.provider_name} returned {response.status_code}")
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise ProviderUnavailable(f"{self.provider_name} returned a non-JSON body")
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"{self.provider_name} returned an unexpected body")
        return data

    def _raise_for_lookup(self, response: httpx.Response, ref: str) -> None:
        """查询订阅时的非 2xx 处理：404 说明凭证不存在（可能伪造），其余视为渠道故障"""
        if response.status_code == 404:
            raise MalformedPayload(f"{self.provider_name} subscription {ref} not found")
        if response.status_code >= 400:
            logger.error(
                f"{self.provider_name} lookup {ref} error: {response.status_code} {response.text}"
            )
            raise ProviderUnavailable(f"{self.provider_name} returned {response.status_code}")

    def verify_attestation(self, token: str) -> AttestationVerdict:
        # 渠道不要求完整性校验时一律视为可信
        return AttestationVerdict(trusted=True)
