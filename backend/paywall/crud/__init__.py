"""CRUD 操作模块（权益存储）"""
from .audit import get_audit_record, reserve_audit_key, write_audit_record
from .entitlement import (
    find_active_by_payer_identity,
    find_entitlements_by_payer_identity,
    find_user_by_purchase_ref,
    get_entitlement,
    index_purchase,
    lock_payer_identity,
    normalize_identity,
    upsert_entitlement,
)

__all__ = [
    "reserve_audit_key",
    "write_audit_record",
    "get_audit_record",
    "get_entitlement",
    "upsert_entitlement",
    "find_entitlements_by_payer_identity",
    "find_active_by_payer_identity",
    "find_user_by_purchase_ref",
    "index_purchase",
    "lock_payer_identity",
    "normalize_identity",
]
