"""审计账本 CRUD 操作"""
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from paywall.enums import AuditSource, EntitlementStatus
from paywall.models import AuditRecord, utc_now


def reserve_audit_key(*, session: Session, key: str) -> bool:
    """
    原子占位幂等键（唯一约束插入），返回该键是否已存在

    占位行在当前事务内插入；调用方提交前补齐字段，回滚即释放占位。
    键已存在时当前事务会被回滚，所以占位必须是工作单元里的第一次写入。
    """
    session.add(AuditRecord(key=key))
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        return True
    return False


def write_audit_record(
    *,
    session: Session,
    key: str,
    user_id: str | None,
    product_ref: str | None,
    purchase_ref: str | None,
    resolved_status: EntitlementStatus | None,
    source: AuditSource,
    extra: dict[str, Any] | None = None,
) -> AuditRecord:
    """补齐已占位的审计记录（未占位时直接创建）"""
    record = session.exec(select(AuditRecord).where(AuditRecord.key == key)).first()
    if record is None:
        record = AuditRecord(key=key)
    record.user_id = user_id
    record.product_ref = product_ref
    record.purchase_ref = purchase_ref
    record.resolved_status = resolved_status
    record.source = source
    record.extra = extra or {}
    record.written_at = utc_now()
    session.add(record)
    session.flush()
    return record


def get_audit_record(*, session: Session, key: str) -> AuditRecord | None:
    """根据幂等键查询审计记录"""
    return session.exec(select(AuditRecord).where(AuditRecord.key == key)).first()
