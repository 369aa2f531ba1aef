"""
客户端令牌模块

移动端调用校验/查询接口时携带 HS256 签名的 JWT，sub 为用户 ID。
令牌由账号服务签发，这里只负责签发工具（测试、运维脚本）与算法常量。
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from paywall.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: str | Any, expires_delta: timedelta) -> str:
    """
    生成访问令牌

    Args:
        subject: 用户 ID
        expires_delta: 有效期

    Returns:
        编码后的 JWT 字符串
    """
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
