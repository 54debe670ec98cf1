import logging
from functools import lru_cache

from elasticsearch import Elasticsearch

from docvault.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_es_client() -> Elasticsearch:
    """
    创建并缓存全局 Elasticsearch 客户端 (Sync)。
    """
    logger.info(f"正在初始化 Elasticsearch 客户端: {settings.ES_URL}")

    connect_kwargs = {
        "hosts": settings.ES_URL,
        "request_timeout": settings.ES_TIMEOUT,
        "max_retries": 3,
        "retry_on_timeout": True,
    }

    if settings.ES_USER and settings.ES_PASSWORD:
        connect_kwargs["basic_auth"] = (settings.ES_USER, settings.ES_PASSWORD)

    return Elasticsearch(**connect_kwargs)


def close_es_client():
    if get_es_client.cache_info().currsize == 0:
        return
    try:
        get_es_client().close()
        logger.info("Elasticsearch 客户端已关闭。")
    except Exception as e:
        logger.warning(f"关闭 Elasticsearch 客户端失败: {e}")
    finally:
        get_es_client.cache_clear()
