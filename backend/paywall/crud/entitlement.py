"""权益与购买索引 CRUD 操作"""
import logging

from sqlmodel import Session, select

from paywall.enums import EntitlementStatus, Provider
from paywall.models import Entitlement, PayerIdentityLock, PurchaseIndex

logger = logging.getLogger(__name__)


def normalize_identity(identity: str | None) -> str | None:
    """付款身份统一为去空白的小写形式"""
    if not identity:
        return None
    value = identity.strip().lower()
    return value or None


def get_entitlement(*, session: Session, user_id: str, for_update: bool = False) -> Entitlement | None:
    """获取用户权益，for_update 时加行锁"""
    stmt = select(Entitlement).where(Entitlement.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


def upsert_entitlement(*, session: Session, entitlement: Entitlement) -> Entitlement:
    """写入（新建或更新）用户权益，不提交"""
    session.add(entitlement)
    session.flush()
    return entitlement


def find_entitlements_by_payer_identity(*, session: Session, identity: str) -> list[Entitlement]:
    """按付款身份查询所有权益"""
    value = normalize_identity(identity)
    if value is None:
        return []
    stmt = select(Entitlement).where(Entitlement.payer_identity == value)
    return list(session.exec(stmt).all())


def find_active_by_payer_identity(*, session: Session, identity: str) -> list[Entitlement]:
    return [
        e
        for e in find_entitlements_by_payer_identity(session=session, identity=identity)
        if e.status == EntitlementStatus.active
    ]


def find_user_by_purchase_ref(*, session: Session, purchase_ref: str) -> str | None:
    """通过二级索引查询购买凭证归属的用户"""
    row = session.get(PurchaseIndex, purchase_ref)
    return row.user_id if row else None


def index_purchase(
    *,
    session: Session,
    purchase_ref: str,
    user_id: str,
    provider: Provider,
    subscription_ref: str,
) -> PurchaseIndex:
    """登记 purchase_ref → user_id，已登记则保持原归属"""
    row = session.get(PurchaseIndex, purchase_ref)
    if row is None:
        row = PurchaseIndex(
            purchase_ref=purchase_ref,
            user_id=user_id,
            provider=provider,
            subscription_ref=subscription_ref,
        )
        session.add(row)
        session.flush()
    elif row.user_id != user_id:
        logger.warning(
            f"Purchase {purchase_ref} already indexed to user {row.user_id}, not rebinding to {user_id}"
        )
    return row


def lock_payer_identity(*, session: Session, identity: str) -> PayerIdentityLock:
    """
    锁定付款身份（行锁持续到事务结束）

    锁行不存在时先创建；并发创建同一身份时后提交的一方会触发主键冲突。
    """
    stmt = (
        select(PayerIdentityLock)
        .where(PayerIdentityLock.identity == identity)
        .with_for_update()
    )
    row = session.exec(stmt).first()
    if row is None:
        row = PayerIdentityLock(identity=identity)
        session.add(row)
        session.flush()
    return row
