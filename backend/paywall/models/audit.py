"""
审计记录模型模块

定义对账审计账本的数据库模型。
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, String
from sqlmodel import Field, SQLModel

from paywall.enums import AuditSource, EntitlementStatus

from .base import utc_now


class AuditRecord(SQLModel, table=True):
    """
    对账审计记录模型

    每个幂等键恰好一条，提交后不再修改。
    key 的唯一约束同时承担幂等占位：在同一事务内先插入占位行，
    处理完成后补齐字段再一起提交；事务回滚即释放占位。

    字段说明：
    - id: 主键
    - key: 幂等键（purchase_ref + "_" + 事件 ID 或通知类型），唯一
    - user_id: 用户 ID
    - product_ref: 产品 ID
    - purchase_ref: 购买凭证
    - resolved_status: 对账得出的规范状态
    - source: 来源（webhook / verify-call）
    - extra: 渠道原始诊断字段（JSON）
    - written_at: 写入时间
    """
    __tablename__ = "audit_records"

    id: int | None = Field(default=None, primary_key=True)
    key: str = Field(sa_column=Column(String(767), unique=True, index=True, nullable=False))
    user_id: str | None = Field(default=None, max_length=128)
    product_ref: str | None = Field(default=None, max_length=255)
    purchase_ref: str | None = Field(default=None, max_length=512)
    resolved_status: EntitlementStatus | None = Field(
        default=None, sa_column=Column(String(32), nullable=True)
    )
    source: AuditSource | None = Field(default=None, sa_column=Column(String(16), nullable=True))
    extra: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    written_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
