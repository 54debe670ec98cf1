import logging

from docvault.core.config import Settings, settings
from docvault.services.retrieval.embedding_store import EmbeddingStore

logger = logging.getLogger(__name__)


def create_embedding_store(config: Settings = settings) -> EmbeddingStore:
    """
    根据配置选择向量库实现，进程内只在组装阶段调用一次。
    """
    store_type = config.EMBEDDING_STORE_TYPE
    if store_type == "elasticsearch":
        from docvault.services.retrieval.elasticsearch_store import ElasticsearchEmbeddingStore
        from docvault.services.retrieval.es_client import get_es_client

        logger.info(f"使用 Elasticsearch 向量库: {config.EMBEDDING_INDEX_NAME}")
        return ElasticsearchEmbeddingStore(
            client=get_es_client(),
            index_name=config.EMBEDDING_INDEX_NAME,
            dims=config.EMBEDDING_DIM,
        )
    raise ValueError(f"Unsupported embedding store type: {store_type}")
