# docvault/services/knowledge/permission_sync.py
import asyncio
import logging

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docvault.core.exceptions import PermissionSyncError
from docvault.domain import metadata_keys
from docvault.domain.models import Knowledge
from docvault.services.retrieval.embedding_store import EmbeddingStore
from docvault.services.security.permission_metadata import permissions_to_metadata_entry

logger = logging.getLogger(__name__)


def _log_retry(retry_state):
    exc = retry_state.outcome.exception()
    logger.warning(
        f"⏳ 权限元数据同步失败，将在 {retry_state.next_action.sleep:.2f}s 后重试... "
        f"(Attempt {retry_state.attempt_number}) | Error: {exc}"
    )


class PermissionMetadataSynchronizer:
    """
    把 Knowledge 的权限表投影到向量库 payload 的 permission 字段。

    写入是按 knowledge_id 过滤的批量覆盖，重复执行结果相同，
    因此失败后可以放心重试 (进程内退避重试 + Worker 定时补偿)。
    """

    def __init__(self, embedding_store: EmbeddingStore, max_attempts: int = 3, wait_seconds: float = 0.5):
        self.embedding_store = embedding_store
        self.max_attempts = max_attempts
        self.wait_seconds = wait_seconds

    def update_permission_metadata(self, knowledge: Knowledge) -> int:
        encoded = permissions_to_metadata_entry(knowledge.permission_map())
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, max=self.wait_seconds * 8),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    updated = self.embedding_store.set_payload(
                        str(knowledge.id), metadata_keys.PERMISSION, encoded
                    )
        except Exception as e:
            raise PermissionSyncError(knowledge.id, e) from e

        logger.info(f"🔐 已同步知识 {knowledge.id} 的权限元数据 '{encoded}' ({updated} 条向量)")
        return updated

    async def aupdate_permission_metadata(self, knowledge: Knowledge) -> int:
        return await asyncio.to_thread(self.update_permission_metadata, knowledge)
