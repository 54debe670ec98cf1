import pytest
from unittest.mock import MagicMock

from docvault.core.config import settings
from docvault.core.exceptions import FileStorageNotFoundError, StartupError
from docvault.services.storage.file_storage import (
    LocalFileStorage,
    MinioFileStorage,
    create_file_storage,
)


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "report.txt"
    path.write_text("quarterly numbers", encoding="utf-8")
    return path


def test_local_store_get_delete(tmp_path, source_file):
    storage = LocalFileStorage(tmp_path / "files")
    storage.check_connection()

    storage.store("abc", source_file, {"name": "报告.txt", "content_type": "text/plain"})
    assert storage.exists("abc")

    stored = storage.get("abc")
    assert stored.content == b"quarterly numbers"
    assert stored.metadata == {"name": "报告.txt", "content_type": "text/plain"}

    storage.delete("abc")
    assert not storage.exists("abc")
    with pytest.raises(FileStorageNotFoundError):
        storage.get("abc")
    # 重复删除不报错
    storage.delete("abc")


def test_local_delete_all(tmp_path, source_file):
    storage = LocalFileStorage(tmp_path / "files")
    storage.store("a", source_file)
    storage.store("b", source_file)

    storage.delete_all()

    assert not storage.exists("a")
    assert not storage.exists("b")


def test_local_check_connection_fails_on_unwritable_root(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    with pytest.raises(StartupError):
        LocalFileStorage(blocker / "files").check_connection()


def test_minio_creates_missing_bucket():
    client = MagicMock()
    client.bucket_exists.return_value = False

    MinioFileStorage(client, "bucket").check_connection()

    client.make_bucket.assert_called_once_with(bucket_name="bucket")


def test_minio_check_connection_failure():
    client = MagicMock()
    client.bucket_exists.side_effect = ConnectionError("refused")
    with pytest.raises(StartupError):
        MinioFileStorage(client, "bucket").check_connection()


def test_minio_store_quotes_metadata(source_file):
    client = MagicMock()

    MinioFileStorage(client, "bucket").store("abc", source_file, {"name": "报告.txt", "content_type": "text/plain"})

    kwargs = client.fput_object.call_args.kwargs
    assert kwargs["object_name"] == "abc"
    assert kwargs["content_type"] == "text/plain"
    assert kwargs["metadata"]["name"] == "%E6%8A%A5%E5%91%8A.txt"


def test_minio_get_decodes_metadata():
    client = MagicMock()
    client.stat_object.return_value.metadata = {
        "X-Amz-Meta-Name": "%E6%8A%A5%E5%91%8A.txt",
        "Content-Type": "text/plain",
    }
    response = client.get_object.return_value
    response.read.return_value = b"data"

    stored = MinioFileStorage(client, "bucket").get("abc")

    assert stored.content == b"data"
    assert stored.metadata == {"name": "报告.txt"}
    response.close.assert_called_once()
    response.release_conn.assert_called_once()


def test_factory_selects_backend(tmp_path, mock_minio):
    local = create_file_storage(settings.model_copy(update={"FILE_STORAGE_TYPE": "fs", "FILE_STORAGE_PATH": tmp_path}))
    assert isinstance(local, LocalFileStorage)

    remote = create_file_storage(settings.model_copy(update={"FILE_STORAGE_TYPE": "minio"}))
    assert isinstance(remote, MinioFileStorage)
    assert remote.client is mock_minio
