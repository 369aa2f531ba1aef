"""
服务启动前检查脚本

等待数据库就绪后创建权益表、审计表和购买索引表。
部署时在 uvicorn 之前执行：python -m paywall.backend_pre_start

- 容器编排启动时数据库可能还在初始化，通过重试等待
- 建表幂等，已存在的表直接跳过
"""
import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import (
    after_log,
    before_log,
    retry,
    stop_after_attempt,
    wait_fixed,
)

from paywall.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 最多等待 5 分钟
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def wait_for_db(db_engine: Engine) -> None:
    """
    执行 SELECT 1 检查数据库是否可用

    失败时记录日志并重新抛出，由 tenacity 重试。
    """
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def main(db_engine: Engine = engine) -> None:
    logger.info("Waiting for database")
    wait_for_db(db_engine)
    with Session(db_engine) as session:
        init_db(session)
    logger.info("Database ready, tables created")


if __name__ == "__main__":  # pragma: no cover
    main()
