# docvault/services/retrieval/elasticsearch_store.py
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from elasticsearch import Elasticsearch, helpers
from langchain_core.documents import Document

from docvault.core.exceptions import EmbeddingStoreError, StartupError
from docvault.domain import metadata_keys
from docvault.services.retrieval.embedding_store import (
    EmbeddingMatch,
    EmbeddingStore,
    require_permission_queries,
)

logger = logging.getLogger(__name__)

_KNOWLEDGE_ID_FIELD = f"metadata.{metadata_keys.KNOWLEDGE_ID}"
_PERMISSION_FIELD = f"metadata.{metadata_keys.PERMISSION}"

# 写入单个 payload 字段的 painless 脚本
_SET_PAYLOAD_SCRIPT = "ctx._source.metadata[params.field] = params.value"


def _escape_wildcard(value: str) -> str:
    # wildcard 查询中 \ * ? 为特殊字符
    return value.replace("\\", "\\\\").replace("*", "\\*").replace("?", "\\?")


def build_index_mappings(dims: int) -> Dict[str, Any]:
    return {
        "properties": {
            "text": {"type": "text"},
            "vector": {
                "type": "dense_vector",
                "dims": dims,
                "index": True,
                "similarity": "cosine"
            },
            "metadata": {
                "type": "object",
                "dynamic": True,
                "properties": {
                    # knowledge_id 作为 keyword 建立倒排索引，按条目过滤 / 更新 / 删除都依赖它
                    metadata_keys.KNOWLEDGE_ID: {"type": "keyword"},
                    metadata_keys.PERMISSION: {"type": "keyword"},
                    metadata_keys.CHECKSUM: {"type": "keyword"},
                    metadata_keys.CONTENT_TYPE: {"type": "keyword"},
                    metadata_keys.INGESTED_AT: {"type": "date"},
                    metadata_keys.PAGE: {"type": "integer"},
                    metadata_keys.INDEX: {"type": "integer"},
                }
            }
        }
    }


class ElasticsearchEmbeddingStore(EmbeddingStore):
    """
    Elasticsearch 向量库实现 (dense_vector + cosine)。
    所有知识条目共用一个索引，通过 metadata.knowledge_id 区分。
    """

    def __init__(self, client: Elasticsearch, index_name: str, dims: int):
        self.client = client
        self.index_name = index_name.lower()
        self.dims = dims

    def check_connection_and_init(self):
        try:
            if not self.client.ping():
                raise ConnectionError(f"Elasticsearch 不可达: {self.index_name}")

            if self.client.indices.exists(index=self.index_name):
                self._verify_dims()
                logger.info(f"✅ 向量索引 {self.index_name} 已存在。")
                return

            logger.info(f"正在创建 Elasticsearch 索引: {self.index_name} (dims={self.dims})")
            self.client.indices.create(
                index=self.index_name,
                settings={"number_of_shards": 1, "number_of_replicas": 0},
                mappings=build_index_mappings(self.dims),
            )
            logger.info(f"索引 {self.index_name} 创建成功。")
        except StartupError:
            raise
        except Exception as e:
            raise StartupError(f"向量库初始化失败 [{self.index_name}]: {e}") from e

    def _verify_dims(self):
        mapping = self.client.indices.get_mapping(index=self.index_name)
        body = mapping.get(self.index_name) or {}
        existing = body.get("mappings", {}).get("properties", {}).get("vector", {}).get("dims")
        if existing is not None and existing != self.dims:
            raise StartupError(
                f"索引 {self.index_name} 的向量维度为 {existing}，与配置的 {self.dims} 不一致"
            )

    def upsert(self, segments: Sequence[Document], embeddings: Sequence[List[float]]) -> List[str]:
        if len(segments) != len(embeddings):
            raise ValueError(f"segments ({len(segments)}) 与 embeddings ({len(embeddings)}) 数量不一致")
        if not segments:
            return []

        ids: List[str] = []
        actions = []
        for segment, vector in zip(segments, embeddings):
            doc_id = uuid.uuid4().hex
            ids.append(doc_id)
            actions.append({
                "_op_type": "index",
                "_index": self.index_name,
                "_id": doc_id,
                "_source": {
                    "text": segment.page_content,
                    "vector": list(vector),
                    "metadata": dict(segment.metadata),
                },
            })

        try:
            helpers.bulk(self.client, actions, refresh=True)
        except Exception as e:
            # 部分写入时按 knowledge_id 回滚，保证要么全部可见要么全部不存在
            knowledge_ids = {str(s.metadata.get(metadata_keys.KNOWLEDGE_ID)) for s in segments}
            logger.error(f"批量写入向量失败，正在回滚 {knowledge_ids}: {e}")
            for knowledge_id in knowledge_ids:
                try:
                    self.delete_by_knowledge_id(knowledge_id)
                except Exception as rollback_err:
                    logger.error(f"回滚 {knowledge_id} 失败: {rollback_err}")
            raise EmbeddingStoreError(f"批量写入向量失败: {e}") from e

        logger.info(f"已写入 {len(ids)} 条向量到 {self.index_name}")
        return ids

    def set_payload(self, knowledge_id: str, field_name: str, value: Any) -> int:
        try:
            resp = self.client.update_by_query(
                index=self.index_name,
                query={"term": {_KNOWLEDGE_ID_FIELD: str(knowledge_id)}},
                script={
                    "source": _SET_PAYLOAD_SCRIPT,
                    "lang": "painless",
                    "params": {"field": field_name, "value": value},
                },
                conflicts="proceed",
                refresh=True,
            )
        except Exception as e:
            raise EmbeddingStoreError(f"更新 {knowledge_id} 的 payload 失败: {e}") from e

        # 与并发写入冲突的文档未被更新，交给上层重试
        if resp.get("version_conflicts", 0):
            raise EmbeddingStoreError(
                f"更新 {knowledge_id} 的 payload 时出现 {resp['version_conflicts']} 个版本冲突"
            )
        updated = resp.get("updated", 0)
        logger.debug(f"已更新 {knowledge_id} 的 {field_name} ({updated} 条)")
        return updated

    def delete_by_knowledge_id(self, knowledge_id: str) -> int:
        try:
            resp = self.client.delete_by_query(
                index=self.index_name,
                query={"term": {_KNOWLEDGE_ID_FIELD: str(knowledge_id)}},
                conflicts="proceed",
                refresh=True,
            )
        except Exception as e:
            raise EmbeddingStoreError(f"删除 {knowledge_id} 的向量失败: {e}") from e
        deleted = resp.get("deleted", 0)
        logger.info(f"已从 ES {self.index_name} 删除知识 {knowledge_id} 的切片。Deleted: {deleted}")
        return deleted

    def query(
        self,
        vector: List[float],
        permission_queries: Sequence[str],
        knowledge_ids: Optional[Sequence[str]] = None,
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> List[EmbeddingMatch]:
        require_permission_queries(permission_queries)

        filters: List[Dict[str, Any]] = [{
            "bool": {
                "should": [
                    {"wildcard": {_PERMISSION_FIELD: {"value": f"*{_escape_wildcard(q)}*"}}}
                    for q in permission_queries
                ],
                "minimum_should_match": 1,
            }
        }]
        if knowledge_ids:
            filters.append({"terms": {_KNOWLEDGE_ID_FIELD: [str(k) for k in knowledge_ids]}})

        try:
            resp = self.client.search(
                index=self.index_name,
                knn={
                    "field": "vector",
                    "query_vector": list(vector),
                    "k": top_k,
                    "num_candidates": max(top_k * 10, 50),
                    "filter": {"bool": {"filter": filters}},
                },
                size=top_k,
                source_excludes=["vector"],
            )
        except Exception as e:
            raise EmbeddingStoreError(f"向量检索失败: {e}") from e

        matches = []
        for hit in resp["hits"]["hits"]:
            score = hit.get("_score") or 0.0
            if score < min_score:
                continue
            source = hit.get("_source", {})
            matches.append(EmbeddingMatch(
                id=hit["_id"],
                score=score,
                text=source.get("text", ""),
                metadata=source.get("metadata", {}),
            ))
        return matches

    def count(self, knowledge_id: Optional[str] = None) -> int:
        query = {"term": {_KNOWLEDGE_ID_FIELD: str(knowledge_id)}} if knowledge_id else {"match_all": {}}
        return self.client.count(index=self.index_name, query=query)["count"]

    def delete_all(self):
        logger.warning(f"正在清空向量索引 {self.index_name}")
        self.client.delete_by_query(
            index=self.index_name,
            query={"match_all": {}},
            conflicts="proceed",
            refresh=True,
        )
