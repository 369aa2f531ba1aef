"""
权益模型模块

定义用户当前权益和购买索引的数据库模型。
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, String
from sqlmodel import Field, SQLModel

from paywall.enums import EntitlementStatus, Provider, Tier

from .base import utc_now


class Entitlement(SQLModel, table=True):
    """
    用户权益模型

    每个用户一行，只由权益写入器（EntitlementWriter）修改，永不删除，
    失效时转为 Free 等级。

    字段说明：
    - id: 主键
    - user_id: 用户 ID（唯一）
    - tier: 会员等级（由状态和产品 ID 推导）
    - status: 规范权益状态
    - provider: 支付渠道
    - subscription_ref: 渠道订阅 ID（订阅血缘标识）
    - purchase_ref: 渠道购买凭证/交易 token
    - product_ref: 渠道产品/计划 ID
    - payer_identity: 付款身份（如付款邮箱），用于跨账号冲突检测
    - credits: 当前等级对应的额度
    - expires_at: 渠道返回的当前周期结束时间
    - state_fetched_at: 产生当前状态的渠道数据拉取时间
    - created_at: 创建时间
    - updated_at: 更新时间
    """
    __tablename__ = "entitlements"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(sa_column=Column(String(128), unique=True, index=True, nullable=False))

    tier: Tier = Field(sa_column=Column(String(32), nullable=False))
    status: EntitlementStatus = Field(sa_column=Column(String(32), nullable=False))
    provider: Provider = Field(sa_column=Column(String(32), nullable=False))

    subscription_ref: str = Field(max_length=255)
    purchase_ref: str = Field(max_length=512)
    product_ref: str | None = Field(default=None, max_length=255)
    payer_identity: str | None = Field(
        default=None, sa_column=Column(String(320), index=True, nullable=True)
    )
    credits: int = Field(default=0)

    expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    state_fetched_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class PurchaseIndex(SQLModel, table=True):
    """
    购买凭证 → 用户 的二级索引

    与权益在同一事务中维护，渠道推送未携带用户 ID 时（如 Google Play RTDN）
    直接按 purchase_ref 查询归属用户，不做全表扫描。
    """
    __tablename__ = "purchase_index"

    purchase_ref: str = Field(sa_column=Column(String(512), primary_key=True))
    user_id: str = Field(sa_column=Column(String(128), index=True, nullable=False))
    provider: Provider = Field(sa_column=Column(String(32), nullable=False))
    subscription_ref: str = Field(max_length=255)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class PayerIdentityLock(SQLModel, table=True):
    """
    付款身份锁

    每个付款身份一行。激活前先对该行加 FOR UPDATE 行锁，
    同一付款身份的激活判定因此在事务间串行执行。
    """
    __tablename__ = "payer_identity_locks"

    identity: str = Field(sa_column=Column(String(320), primary_key=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
