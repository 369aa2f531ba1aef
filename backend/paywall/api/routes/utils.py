"""
工具路由模块

提供系统工具类的 API 端点，如健康检查等。
"""
from fastapi import APIRouter
from sqlmodel import select

from paywall.api.deps import SessionDep

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
def health_check(session: SessionDep) -> bool:
    """
    健康检查端点

    请求路径: GET /api/v1/utils/health-check/

    执行一次 SELECT 1，数据库不可用时由全局异常处理返回 500。
    """
    session.exec(select(1))
    return True
