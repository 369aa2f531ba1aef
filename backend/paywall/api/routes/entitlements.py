"""
权益路由模块

- POST /entitlements/verify: 客户端购买校验（与推送走同一条对账链路）
- GET /entitlements/status: 当前用户权益
- POST /entitlements/cancel: 请求渠道取消当前订阅
"""
from __future__ import annotations

from fastapi import APIRouter

from paywall import crud
from paywall.api.deps import CurrentUserId, GatewaysDep, SessionDep
from paywall.api.errors import AppError
from paywall.api.schemas import ApiEnvelope, CancelData, EntitlementData, VerifyRequest
from paywall.enums import EntitlementStatus, Provider, Tier
from paywall.services.reconciliation import ReconciliationEngine
from paywall.services.tiers import credits_for

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.post("/verify", response_model=ApiEnvelope)
def verify(
    session: SessionDep, gateways: GatewaysDep, current_user_id: CurrentUserId, body: VerifyRequest
) -> ApiEnvelope:
    if body.user_id != current_user_id:
        raise AppError(code=403102, message="Cannot verify for another account", status_code=403)

    engine = ReconciliationEngine(session, gateways)
    result = engine.verify(
        provider=body.provider,
        purchase_ref=body.purchase_ref,
        user_id=body.user_id,
        subscription_ref=body.subscription_ref,
        product_ref=body.product_ref,
        attestation=body.attestation,
    )
    tier = result.tier or Tier.free
    return ApiEnvelope(
        data=EntitlementData(
            user_id=body.user_id,
            status=result.status,
            tier=tier,
            entitled=result.entitled,
            credits=credits_for(tier),
            provider=body.provider,
        )
    )


@router.get("/status", response_model=ApiEnvelope)
def status(session: SessionDep, current_user_id: CurrentUserId) -> ApiEnvelope:
    entitlement = crud.get_entitlement(session=session, user_id=current_user_id)
    if entitlement is None:
        return ApiEnvelope(
            data=EntitlementData(user_id=current_user_id, credits=credits_for(Tier.free))
        )
    status_value = EntitlementStatus(entitlement.status)
    return ApiEnvelope(
        data=EntitlementData(
            user_id=current_user_id,
            status=status_value,
            tier=Tier(entitlement.tier),
            entitled=status_value is EntitlementStatus.active,
            credits=entitlement.credits,
            provider=Provider(entitlement.provider),
            expires_at=entitlement.expires_at,
        )
    )


@router.post("/cancel", response_model=ApiEnvelope)
def cancel(session: SessionDep, gateways: GatewaysDep, current_user_id: CurrentUserId) -> ApiEnvelope:
    engine = ReconciliationEngine(session, gateways)
    result = engine.cancel_for_user(current_user_id)
    return ApiEnvelope(data=CancelData(requested=True, provider=result.provider))
