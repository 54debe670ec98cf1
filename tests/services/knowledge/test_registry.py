import asyncio
import uuid
from datetime import datetime, timedelta

import pytest
from langchain_core.documents import Document

from docvault.core.exceptions import DuplicateChecksumError, KnowledgeNotFoundError
from docvault.domain import metadata_keys
from docvault.domain.models import IngestionStatus, Knowledge, KnowledgeType
from docvault.domain.permission import Permission
from docvault.services.knowledge.permission_sync import PermissionMetadataSynchronizer
from docvault.services.knowledge.registry import KnowledgeRegistry


@pytest.fixture
def registry(session_maker, file_storage, embedding_store):
    synchronizer = PermissionMetadataSynchronizer(embedding_store, max_attempts=2, wait_seconds=0.0)
    return KnowledgeRegistry(session_maker, file_storage, embedding_store, synchronizer)


def _seed_vectors(embedding_store, knowledge_id, count=2, permission="|alice|"):
    segments = [
        Document(page_content=f"chunk {i}", metadata={
            metadata_keys.KNOWLEDGE_ID: str(knowledge_id),
            metadata_keys.PERMISSION: permission,
        })
        for i in range(count)
    ]
    embedding_store.upsert(segments, [[0.1] * 4 for _ in segments])


@pytest.mark.asyncio
async def test_create_registers_owner(registry):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")

    assert k.ingestion_status == IngestionStatus.PENDING
    assert k.token_count is None
    assert k.permission_map() == {"alice": Permission.OWNER}
    assert k.permission_version == 1

    fetched = await registry.get(k.id)
    assert fetched.owner() == "alice"
    assert await registry.get_permission(k.id, "alice") == Permission.OWNER
    assert await registry.get_permission(k.id, "bob") == Permission.NONE


@pytest.mark.asyncio
async def test_duplicate_checksum_allowed_by_default(registry):
    a = await registry.create(KnowledgeType.FILE, "same", "text/plain", "a.txt")
    b = await registry.create(KnowledgeType.FILE, "same", "text/plain", "b.txt")
    assert a.id != b.id
    assert await registry.count_checksum("same") == 2


@pytest.mark.asyncio
async def test_duplicate_checksum_rejected_when_configured(registry):
    registry.reject_duplicate_checksum = True
    await registry.create(KnowledgeType.FILE, "same", "text/plain", "a.txt")
    with pytest.raises(DuplicateChecksumError):
        await registry.create(KnowledgeType.FILE, "same", "text/plain", "b.txt")
    # 不同类型不算重复
    await registry.create(KnowledgeType.TEXT, "same", "text/plain", "c.txt")


@pytest.mark.asyncio
async def test_get_unknown_and_malformed_ids(registry):
    with pytest.raises(KnowledgeNotFoundError):
        await registry.get(uuid.uuid4())
    with pytest.raises(KnowledgeNotFoundError):
        await registry.get("not-a-uuid")


@pytest.mark.asyncio
async def test_set_ingestion_status_ignores_missing(registry):
    # 不抛异常
    assert await registry.set_ingestion_status(uuid.uuid4(), IngestionStatus.SUCCEEDED, 10) is False


@pytest.mark.asyncio
async def test_set_ingestion_status_updates_token_count(registry):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt")
    assert await registry.set_ingestion_status(k.id, IngestionStatus.SUCCEEDED, 42) is True
    k = await registry.get(k.id)
    assert k.ingestion_status == IngestionStatus.SUCCEEDED
    assert k.token_count == 42


@pytest.mark.asyncio
async def test_terminal_status_is_not_overwritten(registry):
    """
    终态只能通过 reset_for_ingestion 重新进入 PENDING
    """
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt")
    await registry.set_ingestion_status(k.id, IngestionStatus.FAILED, None)

    assert await registry.set_ingestion_status(k.id, IngestionStatus.SUCCEEDED, 42) is False
    k = await registry.get(k.id)
    assert k.ingestion_status == IngestionStatus.FAILED
    assert k.token_count is None

    await registry.reset_for_ingestion(k.id, label="again")
    assert await registry.set_ingestion_status(k.id, IngestionStatus.SUCCEEDED, 7) is True
    k = await registry.get(k.id)
    assert k.ingestion_status == IngestionStatus.SUCCEEDED
    assert k.label == "again"


@pytest.mark.asyncio
async def test_set_permission_pushes_metadata(registry, embedding_store):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")
    _seed_vectors(embedding_store, k.id)

    k = await registry.set_permission(k.id, "bob", Permission.READONLY)

    assert embedding_store.permissions_of(k.id) == {"|alice|bob|"}
    stored = await registry.get(k.id)
    assert stored.permission_version == 2
    assert stored.permission_synced_version == 2
    assert not stored.needs_permission_sync


@pytest.mark.asyncio
async def test_remove_permission_pushes_metadata(registry, embedding_store):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")
    await registry.set_permission(k.id, "bob", Permission.READWRITE)
    _seed_vectors(embedding_store, k.id, permission="|alice|bob|")

    await registry.remove_permission(k.id, "bob")

    assert embedding_store.permissions_of(k.id) == {"|alice|"}
    assert (await registry.get(k.id)).permission_map() == {"alice": Permission.OWNER}


@pytest.mark.asyncio
async def test_remove_missing_permission_is_noop(registry, embedding_store):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")
    calls_before = len(embedding_store.set_payload_calls)

    k = await registry.remove_permission(k.id, "nobody")

    assert k.permission_version == 1
    assert len(embedding_store.set_payload_calls) == calls_before


@pytest.mark.asyncio
async def test_set_permission_rejects_delimiter_in_username(registry):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt")
    with pytest.raises(ValueError):
        await registry.set_permission(k.id, "a|b", Permission.READONLY)


@pytest.mark.asyncio
async def test_failed_sync_stays_pending_until_resync(registry, embedding_store):
    """
    [Outbox] 向量库不可用时权限变更仍然提交，补偿任务恢复后推送
    """
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")
    _seed_vectors(embedding_store, k.id)
    embedding_store.fail_set_payload = 100

    await registry.set_permission(k.id, "bob", Permission.READONLY)

    stored = await registry.get(k.id)
    assert stored.get_permission("bob") == Permission.READONLY
    assert stored.needs_permission_sync
    assert embedding_store.permissions_of(k.id) == {"|alice|"}

    embedding_store.fail_set_payload = 0
    synced = await registry.resync_pending_permissions()

    assert synced == 1
    assert embedding_store.permissions_of(k.id) == {"|alice|bob|"}
    assert not (await registry.get(k.id)).needs_permission_sync
    assert await registry.resync_pending_permissions() == 0


@pytest.mark.asyncio
async def test_sync_permissions_missing_knowledge(registry):
    assert await registry.sync_permissions(uuid.uuid4()) is False


@pytest.mark.asyncio
async def test_list_visible(registry):
    a = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")
    b = await registry.create(KnowledgeType.FILE, "c2", "text/plain", "b.txt", owner="bob")
    await registry.set_permission(b.id, "*", Permission.READONLY)

    carol_sees = await registry.list_visible(["carol", "*"])
    alice_sees = await registry.list_visible(["alice", "*"])

    assert [k.id for k in carol_sees] == [b.id]
    assert {k.id for k in alice_sees} == {a.id, b.id}
    assert len(await registry.list_all()) == 2


@pytest.mark.asyncio
async def test_delete_keeps_shared_file_until_last_reference(registry, file_storage, embedding_store, tmp_path):
    src = tmp_path / "a.txt"
    src.write_text("hello", encoding="utf-8")
    file_storage.store("shared", src, {"name": "a.txt"})

    a = await registry.create(KnowledgeType.FILE, "shared", "text/plain", "a.txt")
    b = await registry.create(KnowledgeType.FILE, "shared", "text/plain", "b.txt")
    _seed_vectors(embedding_store, a.id)
    _seed_vectors(embedding_store, b.id)

    await registry.delete(a.id)
    assert file_storage.exists("shared")
    assert embedding_store.count(str(a.id)) == 0
    assert embedding_store.count(str(b.id)) == 2

    await registry.delete(b.id)
    assert not file_storage.exists("shared")
    assert embedding_store.count() == 0

    with pytest.raises(KnowledgeNotFoundError):
        await registry.delete(b.id)


@pytest.mark.asyncio
async def test_delete_removes_permission_rows(registry, db_session):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="alice")
    await registry.delete(k.id)
    assert await db_session.get(Knowledge, k.id) is None
    assert await registry.list_visible(["alice"]) == []


@pytest.mark.asyncio
async def test_tags_and_label(registry):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt")
    await registry.add_tag(k.id, "finance")
    await registry.add_tag(k.id, "finance")
    k = await registry.add_tag(k.id, "2024")
    assert k.tags == ["finance", "2024"]

    k = await registry.remove_tag(k.id, "finance")
    assert k.tags == ["2024"]

    k = await registry.set_label(k.id, "Quarterly report")
    assert (await registry.get(k.id)).label == "Quarterly report"


@pytest.mark.asyncio
async def test_fail_stale_ingestions(registry):
    stale = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt")
    done = await registry.create(KnowledgeType.FILE, "c2", "text/plain", "b.txt")
    await registry.set_ingestion_status(done.id, IngestionStatus.SUCCEEDED, 3)

    fixed = await registry.fail_stale_ingestions(datetime.now() + timedelta(minutes=1))

    assert fixed == [stale.id]
    assert (await registry.get(stale.id)).ingestion_status == IngestionStatus.FAILED
    assert (await registry.get(done.id)).ingestion_status == IngestionStatus.SUCCEEDED


async def _wait_for_version(registry, knowledge_id, version):
    for _ in range(500):
        if (await registry.get(knowledge_id)).permission_version >= version:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"permission_version never reached {version}")


@pytest.mark.asyncio
async def test_concurrent_grant_from_other_process_is_not_lost(registry, session_maker, file_storage, embedding_store):
    """
    本进程的推送写入较旧的权限表时，另一个进程已完成较新的推送：
    本进程发现版本前进后补推，最终向量库与数据库一致
    """
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="carol")
    _seed_vectors(embedding_store, k.id, permission="|carol|")
    other = KnowledgeRegistry(
        session_maker, file_storage, embedding_store,
        PermissionMetadataSynchronizer(embedding_store, max_attempts=2, wait_seconds=0.0),
    )

    entered, release = embedding_store.hold_next_set_payload()
    grant_alice = asyncio.create_task(registry.set_permission(k.id, "alice", Permission.READONLY))
    assert await asyncio.to_thread(entered.wait, 5)

    await other.set_permission(k.id, "bob", Permission.READONLY)
    assert embedding_store.permissions_of(k.id) == {"|alice|bob|carol|"}

    release.set()
    await grant_alice

    assert embedding_store.permissions_of(k.id) == {"|alice|bob|carol|"}
    stored = await registry.get(k.id)
    assert stored.permission_version == 3
    assert not stored.needs_permission_sync


@pytest.mark.asyncio
async def test_concurrent_grant_and_remove_end_with_current_permissions(registry, embedding_store):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="carol")
    await registry.set_permission(k.id, "alice", Permission.READONLY)
    _seed_vectors(embedding_store, k.id, permission="|alice|carol|")

    entered, release = embedding_store.hold_next_set_payload()
    grant_bob = asyncio.create_task(registry.set_permission(k.id, "bob", Permission.READONLY))
    assert await asyncio.to_thread(entered.wait, 5)

    remove_alice = asyncio.create_task(registry.remove_permission(k.id, "alice"))
    await _wait_for_version(registry, k.id, 4)
    release.set()
    await asyncio.gather(grant_bob, remove_alice)

    # alice 的权限被移除后不能残留在向量库中
    assert embedding_store.permissions_of(k.id) == {"|bob|carol|"}
    stored = await registry.get(k.id)
    assert stored.permission_map() == {"carol": Permission.OWNER, "bob": Permission.READONLY}
    assert not stored.needs_permission_sync


@pytest.mark.asyncio
async def test_concurrent_grants_bump_version_atomically(registry, embedding_store):
    k = await registry.create(KnowledgeType.FILE, "c1", "text/plain", "a.txt", owner="carol")
    _seed_vectors(embedding_store, k.id, permission="|carol|")

    users = ["u1", "u2", "u3", "u4"]
    await asyncio.gather(*(registry.set_permission(k.id, u, Permission.READONLY) for u in users))

    stored = await registry.get(k.id)
    assert stored.permission_version == 1 + len(users)
    assert not stored.needs_permission_sync
    assert embedding_store.permissions_of(k.id) == {"|carol|u1|u2|u3|u4|"}
