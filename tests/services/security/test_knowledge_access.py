import pytest
import pytest_asyncio

from docvault.core.exceptions import ForbiddenError, KnowledgeNotFoundError
from docvault.domain.models import IngestionStatus
from docvault.domain.permission import Permission
from docvault.services.security.identity import ANONYMOUS, Identity

TWO_PARAGRAPHS = "first paragraph.\n\nsecond paragraph."

ALICE = Identity(username="alice")
BOB = Identity(username="bob")
ADMIN = Identity(username="root", is_admin=True)


@pytest.fixture
def access(services):
    return services.knowledge_access


@pytest_asyncio.fixture
async def alice_doc(access, write_file, wait_ingestion):
    k = await access.add_source(ALICE, write_file("a.txt", TWO_PARAGRAPHS), "a.txt", "text/plain")
    await wait_ingestion()
    return k


@pytest.mark.asyncio
async def test_anonymous_cannot_add(access, write_file):
    with pytest.raises(ForbiddenError):
        await access.add_source(ANONYMOUS, write_file("a.txt", TWO_PARAGRAPHS), "a.txt", "text/plain")
    with pytest.raises(ForbiddenError):
        await access.add_text(ANONYMOUS, "hello")


@pytest.mark.asyncio
async def test_private_knowledge_is_hidden(access, alice_doc):
    assert alice_doc.get_permission("alice") == Permission.OWNER
    assert [k.id for k in await access.list(ALICE)] == [alice_doc.id]
    assert await access.list(BOB) == []
    assert await access.list(ANONYMOUS) == []

    with pytest.raises(KnowledgeNotFoundError):
        await access.get(BOB, alice_doc.id)
    with pytest.raises(KnowledgeNotFoundError):
        await access.get_file(ANONYMOUS, alice_doc.id)
    # 没有任何权限时修改操作同样表现为不存在
    with pytest.raises(KnowledgeNotFoundError):
        await access.delete(BOB, alice_doc.id)


@pytest.mark.asyncio
async def test_readonly_user_can_read_but_not_write(access, alice_doc):
    await access.set_permission(ALICE, alice_doc.id, "bob", Permission.READONLY)

    assert (await access.get(BOB, alice_doc.id)).id == alice_doc.id
    assert (await access.get_file(BOB, alice_doc.id)).name == "a.txt"
    with pytest.raises(ForbiddenError):
        await access.delete(BOB, alice_doc.id)
    with pytest.raises(ForbiddenError):
        await access.set_permission(BOB, alice_doc.id, "carol", Permission.READONLY)
    with pytest.raises(ForbiddenError):
        await access.add_tag(BOB, alice_doc.id, "x")


@pytest.mark.asyncio
async def test_readwrite_user_can_edit(access, alice_doc):
    await access.set_permission(ALICE, alice_doc.id, "bob", Permission.READWRITE)

    k = await access.add_tag(BOB, alice_doc.id, "shared")
    assert k.tags == ["shared"]
    k = await access.set_label(BOB, alice_doc.id, "Renamed")
    assert k.label == "Renamed"
    k = await access.set_permission(BOB, alice_doc.id, "carol", Permission.READONLY)
    assert k.get_permission("carol") == Permission.READONLY


@pytest.mark.asyncio
async def test_wildcard_opens_to_everyone(access, alice_doc):
    await access.set_permission(ALICE, alice_doc.id, "*", Permission.READONLY)

    assert [k.id for k in await access.list(ANONYMOUS)] == [alice_doc.id]
    assert (await access.get(BOB, alice_doc.id)).id == alice_doc.id
    with pytest.raises(ForbiddenError):
        await access.delete(ANONYMOUS, alice_doc.id)


@pytest.mark.asyncio
async def test_admin_bypasses_permissions(access, services, alice_doc):
    assert [k.id for k in await access.list(ADMIN)] == [alice_doc.id]
    assert (await access.get(ADMIN, alice_doc.id)).id == alice_doc.id

    await access.delete(ADMIN, alice_doc.id)
    assert await services.registry.find(alice_doc.id) is None


@pytest.mark.asyncio
async def test_reupload_returns_visible_duplicate(access, services, alice_doc, write_file, wait_ingestion):
    again = await access.add_source(ALICE, write_file("again.txt", TWO_PARAGRAPHS), "again.txt", "text/plain")
    assert again.id == alice_doc.id

    # bob 看不到 alice 的条目，上传相同内容得到独立的知识
    bobs = await access.add_source(BOB, write_file("bob.txt", TWO_PARAGRAPHS), "bob.txt", "text/plain")
    await wait_ingestion()

    assert bobs.id != alice_doc.id
    assert bobs.checksum == alice_doc.checksum
    assert (await services.registry.get(bobs.id)).ingestion_status == IngestionStatus.SUCCEEDED
