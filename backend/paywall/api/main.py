"""
API 路由聚合模块

将所有业务路由模块聚合到一个统一的 router 中，由 paywall/main.py 注册。

路由模块说明：
- webhooks: 渠道推送（PayPal / Stripe / Google Play）
- entitlements: 客户端校验、权益查询、取消订阅
- utils: 工具（健康检查）
"""
from fastapi import APIRouter

from paywall.api.routes import entitlements, utils, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(entitlements.router)  # /entitlements/*
api_router.include_router(utils.router)  # /utils/*
