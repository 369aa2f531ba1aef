"""
枚举类型定义模块

定义应用中使用的所有枚举类型。
所有枚举都继承自 str 和 Enum，这样既可以用作字符串，又具有枚举的特性。
"""
from enum import Enum  # 枚举类型，用于定义固定的选项集合


class Provider(str, Enum):
    """
    支付渠道枚举

    - paypal: PayPal 订阅
    - stripe: Stripe 订阅
    - google_play: Google Play 订阅
    """
    paypal = "paypal"
    stripe = "stripe"
    google_play = "google_play"


class EntitlementStatus(str, Enum):
    """
    权益状态枚举（与渠道无关的规范状态）

    - active: 生效中
    - pending: 待支付/待确认
    - suspended: 已暂停
    - cancelled: 已取消（终态）
    - expired: 已过期（终态）
    - payment_failed: 扣款失败
    - integrity_failed: 设备/应用完整性校验失败
    """
    active = "active"
    pending = "pending"
    suspended = "suspended"
    cancelled = "cancelled"
    expired = "expired"
    payment_failed = "payment_failed"
    integrity_failed = "integrity_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EntitlementStatus.cancelled, EntitlementStatus.expired)


class Tier(str, Enum):
    """
    会员等级枚举

    等级只由 (状态, 产品 ID) 推导，不接受渠道直接传入。
    - Free: 基础等级（非 active 状态一律为 Free）
    - Champ: 中级会员
    - Grandmaster: 高级会员
    """
    free = "Free"
    champ = "Champ"
    grandmaster = "Grandmaster"


class PaymentState(str, Enum):
    """
    渠道扣款状态枚举

    - pending: 待支付
    - received: 已收款
    - free_trial: 免费试用中
    - deferred: 延期支付
    """
    pending = "pending"
    received = "received"
    free_trial = "free_trial"
    deferred = "deferred"

    @property
    def is_confirmed(self) -> bool:
        return self in (PaymentState.received, PaymentState.free_trial)


class AuditSource(str, Enum):
    """
    审计记录来源枚举

    - webhook: 渠道推送通知
    - verify_call: 客户端发起的同步校验
    """
    webhook = "webhook"
    verify_call = "verify-call"


class ReconcileOutcome(str, Enum):
    """
    单次对账处理结果

    - applied: 已写入权益
    - duplicate: 幂等键已处理过，直接确认
    - conflict: 付款身份冲突，新订阅已取消
    - deferred: 渠道暂不可用，未占用幂等键，等待重投
    - ignored: 不支持的通知类型或无法归属的购买，确认后丢弃
    - integrity_failed: 完整性校验失败，仅记录审计
    - skipped: 已记录审计，但权益因终态/过期数据未变更
    """
    applied = "applied"
    duplicate = "duplicate"
    conflict = "conflict"
    deferred = "deferred"
    ignored = "ignored"
    integrity_failed = "integrity_failed"
    skipped = "skipped"
