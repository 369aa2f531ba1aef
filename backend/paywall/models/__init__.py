"""
数据库模型定义模块

本模块使用 SQLModel 定义所有数据库表结构。

模型按功能拆分：
- entitlement.py: 用户权益模型、购买索引模型、付款身份锁
- audit.py: 对账审计记录模型
"""
from sqlmodel import SQLModel

from .audit import AuditRecord
from .base import as_utc, utc_now
from .entitlement import Entitlement, PayerIdentityLock, PurchaseIndex

__all__ = [
    "SQLModel",
    "utc_now",
    "as_utc",
    "Entitlement",
    "PurchaseIndex",
    "PayerIdentityLock",
    "AuditRecord",
]
