"""
Google Play 订阅网关

- 订阅查询: purchases.subscriptions.get (Android Publisher v3)
- 完整性校验: Play Integrity decodeIntegrityToken
- 访问令牌: google-auth 服务账号凭证换取 OAuth2 令牌（未配置服务账号时使用 ADC）
"""
from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any

import google.auth
import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from paywall.api.errors import MalformedPayload, ProviderUnavailable
from paywall.core.config import settings
from paywall.enums import EntitlementStatus, PaymentState

from .base import AttestationVerdict, HttpGateway, SubscriptionState, parse_epoch
from .token_cache import AccessTokenCache

logger = logging.getLogger(__name__)

_SCOPES = [
    "https://www.googleapis.com/auth/androidpublisher",
    "https://www.googleapis.com/auth/playintegrity",
]

# paymentState: 0 待支付, 1 已收款, 2 免费试用, 3 延期升级/降级待支付
_PAYMENT_STATE = {
    0: PaymentState.pending,
    1: PaymentState.received,
    2: PaymentState.free_trial,
    3: PaymentState.deferred,
}

_CANCEL_REASON = {
    0: "user_canceled",
    1: "system_canceled",
    2: "replaced",
    3: "developer_canceled",
}


class GooglePlayGateway(HttpGateway):
    """
    Google Play Developer API 封装

    访问令牌由 google-auth 凭证刷新得到，再放进 AccessTokenCache，
    渠道返回 401 时丢弃缓存并重新刷新一次。
    """

    provider_name = "google_play"

    def __init__(
        self,
        *,
        package_name: str | None,
        service_account_email: str | None,
        private_key: str | None,
        require_integrity: bool = False,
        base_url: str | None = None,
        integrity_base_url: str | None = None,
        token_uri: str | None = None,
        token_cache: AccessTokenCache | None = None,
        credentials: Any | None = None,
        auth_request: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url=base_url or settings.GOOGLE_PLAY_API_BASE, **kwargs)
        self._package_name = package_name
        self._service_account_email = service_account_email
        # 环境变量里的 PEM 通常把换行写成 \n
        self._private_key = private_key.replace("\\n", "\n") if private_key else None
        self._integrity_base_url = (
            integrity_base_url or settings.GOOGLE_PLAY_INTEGRITY_API_BASE
        ).rstrip("/")
        self._token_uri = token_uri or settings.GOOGLE_TOKEN_URI
        self.requires_attestation = require_integrity
        self._tokens = token_cache or AccessTokenCache(
            skew_seconds=settings.ACCESS_TOKEN_REFRESH_SKEW_SECONDS
        )
        # google-auth 凭证与令牌端点请求对象，测试时可注入
        self._credentials = credentials
        self._auth_request = auth_request

    def _load_credentials(self) -> Any:
        """
        构造 google-auth 凭证（首次调用时创建，之后复用）

        配置了服务账号邮箱和私钥时使用服务账号凭证，否则回退到应用默认凭证（ADC）。
        """
        if self._credentials is not None:
            return self._credentials
        if self._service_account_email and self._private_key:
            info = {
                "type": "service_account",
                "client_email": self._service_account_email,
                "private_key": self._private_key,
                "token_uri": self._token_uri,
            }
            try:
                credentials = service_account.Credentials.from_service_account_info(
                    info, scopes=_SCOPES
                )
            except ValueError as e:
                logger.error(f"Google service account key unusable: {e}")
                raise ProviderUnavailable("Google service account key is invalid")
        else:
            try:
                credentials, _ = google.auth.default(scopes=_SCOPES)
            except google_auth_exceptions.DefaultCredentialsError:
                raise ProviderUnavailable("Google service account not configured")
        self._credentials = credentials
        return credentials

    def _fetch_access_token(self) -> tuple[str, int]:
        credentials = self._load_credentials()
        request = self._auth_request or functools.partial(GoogleAuthRequest(), timeout=self._timeout)
        try:
            credentials.refresh(request)
        except google_auth_exceptions.TransportError as e:
            logger.error(f"Google token endpoint unreachable: {e}")
            raise ProviderUnavailable(f"google_play unreachable: {e}")
        except google_auth_exceptions.RefreshError as e:
            logger.error(f"Google token error: {e}")
            raise ProviderUnavailable("Google authentication failed")
        if not credentials.token:
            raise ProviderUnavailable("Google token response without access_token")

        expires_in = 0
        if credentials.expiry is not None:
            # google-auth 的 expiry 是不带时区的 UTC 时间
            expiry = credentials.expiry.replace(tzinfo=timezone.utc)
            expires_in = int((expiry - datetime.now(timezone.utc)).total_seconds())
        return str(credentials.token), expires_in

    def _authorized(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        for _ in range(2):
            token = self._tokens.get(self._fetch_access_token)
            response = self._send(method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs)
            if response.status_code != 401:
                return response
            logger.warning("Google rejected cached access token, refreshing")
            self._tokens.invalidate()
        raise ProviderUnavailable("Google authentication failed")

    def _subscription_path(self, product_ref: str | None, purchase_ref: str) -> str:
        if not self._package_name:
            raise ProviderUnavailable("GOOGLE_PLAY_PACKAGE_NAME not configured")
        if not product_ref:
            raise MalformedPayload("Google Play subscription lookup needs a product id")
        return (
            f"/androidpublisher/v3/applications/{self._package_name}"
            f"/purchases/subscriptions/{product_ref}/tokens/{purchase_ref}"
        )

    def fetch_subscription_state(
        self, subscription_ref: str, purchase_ref: str, product_ref: str | None = None
    ) -> SubscriptionState:
        response = self._authorized("GET", self._subscription_path(product_ref, purchase_ref))
        if response.status_code == 410:
            # 凭证已失效（过期很久或已撤销）
            return SubscriptionState(
                expiry=None,
                payment_state=PaymentState.pending,
                lifecycle=EntitlementStatus.expired,
                product_ref=product_ref,
                revision="gone",
                raw={"http_status": 410},
            )
        self._raise_for_lookup(response, purchase_ref)
        return self._to_state(self._json(response), product_ref)

    def _to_state(self, data: dict[str, Any], product_ref: str | None) -> SubscriptionState:
        payment_code = data.get("paymentState")
        cancel_code = data.get("cancelReason")
        expiry_ms = data.get("expiryTimeMillis")

        lifecycle = None
        if data.get("autoResumeTimeMillis"):
            lifecycle = EntitlementStatus.suspended

        return SubscriptionState(
            expiry=parse_epoch(expiry_ms, millis=True),
            payment_state=_PAYMENT_STATE.get(payment_code, PaymentState.pending),
            cancel_reason=_CANCEL_REASON.get(cancel_code, str(cancel_code))
            if cancel_code is not None
            else None,
            lifecycle=lifecycle,
            payer_identity=data.get("emailAddress"),
            product_ref=product_ref,
            user_ref=data.get("obfuscatedExternalAccountId"),
            revision=f"{data.get('orderId') or ''}:{expiry_ms or ''}:{payment_code}",
            raw={
                "orderId": data.get("orderId"),
                "expiryTimeMillis": expiry_ms,
                "paymentState": payment_code,
                "cancelReason": cancel_code,
                "autoRenewing": data.get("autoRenewing"),
                "linkedPurchaseToken": data.get("linkedPurchaseToken"),
            },
        )

    def cancel_subscription(
        self, subscription_ref: str, reason: str, product_ref: str | None = None
    ) -> bool:
        path = self._subscription_path(product_ref, subscription_ref) + ":cancel"
        response = self._authorized("POST", path)
        if response.status_code in (200, 204):
            logger.info(f"Google Play subscription {subscription_ref} cancelled: {reason}")
            return True
        logger.warning(
            f"Google Play cancel {subscription_ref} unexpected response: "
            f"{response.status_code} {response.text}"
        )
        return False

    def verify_attestation(self, token: str) -> AttestationVerdict:
        """
        解码 Play Integrity 令牌并判定是否可信

        可信条件：应用被 Play 识别、设备满足完整性、请求包名一致。
        """
        if not self._package_name:
            raise ProviderUnavailable("GOOGLE_PLAY_PACKAGE_NAME not configured")
        response = self._authorized(
            "POST",
            f"{self._integrity_base_url}/v1/{self._package_name}:decodeIntegrityToken",
            json={"integrity_token": token},
        )
        if response.status_code == 400:
            return AttestationVerdict(trusted=False, detail="undecodable integrity token")
        if response.status_code != 200:
            raise ProviderUnavailable(f"Play Integrity returned {response.status_code}")

        payload = self._json(response).get("tokenPayloadExternal") or {}
        app_verdict = (payload.get("appIntegrity") or {}).get("appRecognitionVerdict")
        device_verdicts = (payload.get("deviceIntegrity") or {}).get("deviceRecognitionVerdict") or []
        package = (payload.get("requestDetails") or {}).get("requestPackageName")

        if app_verdict != "PLAY_RECOGNIZED":
            return AttestationVerdict(trusted=False, detail=f"app verdict {app_verdict}")
        if "MEETS_DEVICE_INTEGRITY" not in device_verdicts:
            return AttestationVerdict(trusted=False, detail="device integrity not met")
        if package != self._package_name:
            return AttestationVerdict(trusted=False, detail=f"package mismatch {package}")
        return AttestationVerdict(trusted=True)
