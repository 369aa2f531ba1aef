"""
数据库连接模块

管理数据库引擎和会话的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 确保在使用前导入所有模型（paywall.models），否则建表时会遗漏
"""
from sqlmodel import Session, SQLModel, create_engine

from paywall.core.config import settings

# 创建数据库引擎（连接池）
# pool_pre_ping: 渠道请求期间事务可能持续数秒，取连接前先探活
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    初始化数据库

    创建权益表、审计表和购买索引表（已存在则跳过）。

    Args:
        session: 数据库会话
    """
    import paywall.models  # noqa: F401  注册所有表

    SQLModel.metadata.create_all(session.get_bind())
