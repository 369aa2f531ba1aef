"""
渠道推送路由模块

每个支付渠道一个端点，原始请求体原样交给对账引擎（签名校验需要原始字节）。
签名失败返回 401；其余情况（格式错误、不支持的类型、渠道不可用等）一律 200 确认，
避免渠道侧无限重投。
"""
from fastapi import APIRouter, Request

from paywall.api.deps import GatewaysDep, RawBody, SessionDep
from paywall.api.schemas import ApiEnvelope, WebhookAckData
from paywall.enums import Provider
from paywall.services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _ack(
    provider: Provider, session: SessionDep, gateways: GatewaysDep, request: Request, body: bytes
) -> ApiEnvelope:
    headers = {k.lower(): v for k, v in request.headers.items()}
    engine = ReconciliationEngine(session, gateways)
    result = engine.handle_notification(provider, body, headers)
    return ApiEnvelope(data=WebhookAckData(outcome=result.outcome))


@router.post("/paypal", response_model=ApiEnvelope)
def paypal(session: SessionDep, gateways: GatewaysDep, request: Request, body: RawBody) -> ApiEnvelope:
    return _ack(Provider.paypal, session, gateways, request, body)


@router.post("/stripe", response_model=ApiEnvelope)
def stripe(session: SessionDep, gateways: GatewaysDep, request: Request, body: RawBody) -> ApiEnvelope:
    return _ack(Provider.stripe, session, gateways, request, body)


@router.post("/google-play", response_model=ApiEnvelope)
def google_play(
    session: SessionDep, gateways: GatewaysDep, request: Request, body: RawBody
) -> ApiEnvelope:
    """Pub/Sub 推送（Real-Time Developer Notifications）"""
    return _ack(Provider.google_play, session, gateways, request, body)
