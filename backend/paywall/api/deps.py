"""
FastAPI 依赖注入模块

提供可复用的依赖项，用于路由处理函数中：
- 数据库会话
- 当前用户 ID（从 Bearer JWT 解析）
- 支付渠道网关工厂（测试中通过 dependency_overrides 替换）
- 原始请求体（签名校验需要未经解析的字节）
"""
from collections.abc import Callable, Generator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from paywall.api.schemas import TokenPayload
from paywall.core import security
from paywall.core.config import settings
from paywall.core.db import engine
from paywall.enums import Provider
from paywall.integrations import ProviderGateway, get_gateway

# 从请求头的 Authorization: Bearer <token> 中提取 token
reusable_oauth2 = HTTPBearer()


def get_db() -> Generator[Session, None, None]:
    """
    获取数据库会话（依赖注入）

    使用 yield 确保会话在请求结束后自动关闭。
    """
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials, Depends(reusable_oauth2)]


def get_current_user_id(token: TokenDep) -> str:
    """
    获取当前登录用户 ID（依赖注入）

    用户账号由外部账号系统管理，这里只校验 JWT 并返回 sub。

    Raises:
        HTTPException: token 无效或缺少 sub 时返回 401
    """
    try:
        payload = jwt.decode(
            token.credentials, settings.SECRET_KEY, algorithms=[security.ALGORITHM]
        )
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if not token_data.sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return token_data.sub


CurrentUserId = Annotated[str, Depends(get_current_user_id)]


def get_gateways() -> Callable[[Provider], ProviderGateway]:
    """返回渠道网关工厂"""
    return get_gateway


GatewaysDep = Annotated[Callable[[Provider], ProviderGateway], Depends(get_gateways)]


async def raw_body(request: Request) -> bytes:
    """读取未解析的请求体字节"""
    return await request.body()


RawBody = Annotated[bytes, Depends(raw_body)]
