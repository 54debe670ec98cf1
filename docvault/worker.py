# docvault/worker.py

import os
import logging
from typing import Any
from datetime import datetime, timedelta
from arq import cron
from arq.connections import RedisSettings

from docvault.bootstrap import build_registry
from docvault.core.config import settings
from docvault.core.logging_setup import setup_logging
from docvault.db.session import async_session_maker, engine
from docvault.services.knowledge.registry import KnowledgeRegistry
from docvault.services.retrieval.es_client import close_es_client

# --- 1. 初始化 Worker 日志 ---
setup_logging(str(settings.LOG_FILE_PATH), log_level=settings.LOG_LEVEL)
logger = logging.getLogger("docvault.worker")


def _registry(ctx: Any) -> KnowledgeRegistry:
    return ctx["registry"]


# -----------------------------------------------------------
# 定时补偿 (Cron Job)
# -----------------------------------------------------------
async def resync_permissions_task(ctx: Any) -> int:
    """
    [Outbox] 将 permission_version 领先于 permission_synced_version 的知识重新推送到向量库。
    """
    synced = await _registry(ctx).resync_pending_permissions()
    if synced:
        logger.info(f"🔁 权限元数据补偿同步完成: {synced} 条")
    return synced


async def fix_stale_ingestions_task(ctx: Any) -> int:
    """
    [Watchdog] PENDING 超过阈值的知识强制置为 FAILED，用户可以手动重试。
    """
    threshold_time = datetime.now() - timedelta(minutes=settings.INGESTION_TIMEOUT_MINUTES)
    fixed = await _registry(ctx).fail_stale_ingestions(threshold_time)
    if fixed:
        logger.info(f"✅ Watchdog 清理完成，共 {len(fixed)} 项。")
    return len(fixed)


async def startup(ctx: Any):
    logger.info("👷 Worker 进程启动...")
    ctx["registry"] = build_registry(settings, async_session_maker)


async def shutdown(ctx: Any):
    logger.info("👷 Worker 进程关闭...")
    close_es_client()
    await engine.dispose()


# --- Arq 配置 ---

class WorkerSettings:
    functions: list = []
    redis_settings = RedisSettings(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT
    )

    cron_jobs = [
        # 每分钟一次
        cron(resync_permissions_task, second=0),
        cron(fix_stale_ingestions_task, minute={0, 10, 20, 30, 40, 50}),
    ]

    queue_name = os.getenv("ARQ_QUEUES", settings.DEFAULT_QUEUE_NAME)
    max_jobs = 1
    on_startup = startup
    on_shutdown = shutdown
