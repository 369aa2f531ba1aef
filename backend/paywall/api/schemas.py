"""
API 请求/响应数据模型（Schema）

定义所有 API 接口的请求和响应数据结构。
使用 Pydantic 进行数据验证和序列化。
这些模型不是数据库表，只用于 API 数据交换。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from paywall.enums import EntitlementStatus, Provider, ReconcileOutcome, Tier

# ============================================================
# 通用响应模型
# ============================================================


class TokenPayload(BaseModel):
    """
    JWT Token 载荷模型

    sub (subject) 存储账号系统中的用户 ID。
    """
    sub: str | None = None


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    - code: 状态码（0 表示成功，非 0 表示错误）
    - message: 消息（成功时为 "success"，错误时为错误描述）
    - data: 数据（成功时返回业务数据，错误时为 None）

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 503101, "message": "Please retry later", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# 渠道推送
# ============================================================


class WebhookAckData(BaseModel):
    """
    渠道推送确认

    除签名失败外，所有推送都以 200 确认，outcome 仅用于排查。
    """
    received: bool = True
    outcome: ReconcileOutcome


# ============================================================
# 权益
# ============================================================


class VerifyRequest(BaseModel):
    """
    客户端购买校验请求

    - purchase_ref: 渠道购买凭证（PayPal/Stripe 为订阅 ID，Google 为 purchaseToken）
    - subscription_ref: 渠道订阅 ID（为空时与 purchase_ref 相同）
    - product_ref: 产品 ID（Google Play 查询订阅时必填）
    - attestation: 设备完整性令牌（Play Integrity）
    """
    provider: Provider
    purchase_ref: str = Field(min_length=1, max_length=512)
    user_id: str = Field(min_length=1, max_length=128)
    subscription_ref: str | None = Field(default=None, max_length=255)
    product_ref: str | None = Field(default=None, max_length=255)
    attestation: str | None = None


class EntitlementData(BaseModel):
    """
    用户权益数据

    entitled 为 True 表示当前可使用付费功能。
    """
    user_id: str
    status: EntitlementStatus | None = None
    tier: Tier = Tier.free
    entitled: bool = False
    credits: int | None = None
    provider: Provider | None = None
    expires_at: datetime | None = None


class CancelData(BaseModel):
    """取消请求结果（权益在渠道推送到达后变更）"""
    requested: bool
    provider: Provider
