# docvault/services/storage/file_storage.py
"""
按 checksum 寻址的原始文件存储。

同一 checksum 只存一份对象，对象名即 checksum；
删除由知识管理层在最后一个引用消失后发起。
"""
import json
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote, unquote

from minio import Minio
from minio.error import S3Error

from docvault.core.config import Settings, settings
from docvault.core.exceptions import (
    FileStorageNotFoundError,
    StartupError,
    UnexpectedFileStorageError,
)

logger = logging.getLogger(__name__)

# S3 自定义元数据只允许 ASCII，写入前统一做 URL 编码
_META_PREFIX = "x-amz-meta-"
_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchObject"}


@dataclass
class StoredFile:
    content: bytes
    metadata: Dict[str, str] = field(default_factory=dict)


class FileStorage(ABC):
    """
    所有方法都是阻塞调用，异步上下文中通过 asyncio.to_thread 使用。
    """

    @abstractmethod
    def check_connection(self):
        """启动自检，失败抛出 StartupError"""

    @abstractmethod
    def store(self, checksum: str, file_path: Path, metadata: Optional[Dict[str, str]] = None): ...

    @abstractmethod
    def get(self, checksum: str) -> StoredFile: ...

    @abstractmethod
    def exists(self, checksum: str) -> bool: ...

    @abstractmethod
    def delete(self, checksum: str): ...

    @abstractmethod
    def delete_all(self): ...


@lru_cache(maxsize=1)
def get_minio_client() -> Minio:
    """
    获取全局唯一的 MinIO 客户端。
    """
    return Minio(
        endpoint=settings.MINIO_ENDPOINT,
        access_key=settings.MINIO_ACCESS_KEY,
        secret_key=settings.MINIO_SECRET_KEY,
        secure=settings.MINIO_SECURE
    )


class MinioFileStorage(FileStorage):

    def __init__(self, client: Minio, bucket_name: str):
        self.client = client
        self.bucket_name = bucket_name

    def check_connection(self):
        try:
            if not self.client.bucket_exists(bucket_name=self.bucket_name):
                logger.info(f"MinIO bucket {self.bucket_name} 不存在，正在创建...")
                self.client.make_bucket(bucket_name=self.bucket_name)
            logger.info(f"✅ MinIO 已连接 (bucket: {self.bucket_name})")
        except Exception as e:
            raise StartupError(f"MinIO 连接失败: {e}") from e

    def store(self, checksum: str, file_path: Path, metadata: Optional[Dict[str, str]] = None):
        encoded = {k: quote(str(v)) for k, v in (metadata or {}).items()}
        content_type = (metadata or {}).get("content_type") or "application/octet-stream"
        try:
            logger.info(f"开始上传文件 {checksum} 到 MinIO...")
            self.client.fput_object(
                bucket_name=self.bucket_name,
                object_name=checksum,
                file_path=str(file_path),
                content_type=content_type,
                metadata=encoded,
                part_size=10 * 1024 * 1024
            )
            logger.info(f"文件上传成功: {checksum}")
        except S3Error as e:
            logger.error(f"MinIO 上传失败: {e}", exc_info=True)
            raise UnexpectedFileStorageError(str(e)) from e

    def get(self, checksum: str) -> StoredFile:
        response = None
        try:
            stat = self.client.stat_object(bucket_name=self.bucket_name, object_name=checksum)
            response = self.client.get_object(bucket_name=self.bucket_name, object_name=checksum)
            content = response.read()
        except S3Error as e:
            if e.code in _NOT_FOUND_CODES:
                raise FileStorageNotFoundError(checksum) from e
            logger.error(f"从 MinIO 读取文件失败 [{checksum}]: {e}", exc_info=True)
            raise UnexpectedFileStorageError(str(e)) from e
        finally:
            if response:
                response.close()
                response.release_conn()

        metadata = {}
        for key, value in (stat.metadata or {}).items():
            if key.lower().startswith(_META_PREFIX):
                metadata[key[len(_META_PREFIX):].lower()] = unquote(value)
        return StoredFile(content=content, metadata=metadata)

    def exists(self, checksum: str) -> bool:
        try:
            self.client.stat_object(bucket_name=self.bucket_name, object_name=checksum)
            return True
        except S3Error as e:
            if e.code in _NOT_FOUND_CODES:
                return False
            raise UnexpectedFileStorageError(str(e)) from e

    def delete(self, checksum: str):
        try:
            logger.info(f"正在从 MinIO 删除文件: {checksum}")
            self.client.remove_object(bucket_name=self.bucket_name, object_name=checksum)
        except S3Error as e:
            raise UnexpectedFileStorageError(str(e)) from e

    def delete_all(self):
        try:
            for obj in self.client.list_objects(bucket_name=self.bucket_name, recursive=True):
                self.client.remove_object(bucket_name=self.bucket_name, object_name=obj.object_name)
        except S3Error as e:
            raise UnexpectedFileStorageError(str(e)) from e


class LocalFileStorage(FileStorage):
    """
    本地文件系统实现：<root>/<checksum> 存内容，<root>/<checksum>.meta.json 存元数据。
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _content_path(self, checksum: str) -> Path:
        return self.root / checksum

    def _meta_path(self, checksum: str) -> Path:
        return self.root / f"{checksum}.meta.json"

    def check_connection(self):
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            probe = self.root / ".write_probe"
            probe.touch()
            probe.unlink()
        except OSError as e:
            raise StartupError(f"文件存储目录不可写: {self.root}: {e}") from e

    def store(self, checksum: str, file_path: Path, metadata: Optional[Dict[str, str]] = None):
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, self._content_path(checksum))
            self._meta_path(checksum).write_text(
                json.dumps(metadata or {}, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as e:
            raise UnexpectedFileStorageError(str(e)) from e

    def get(self, checksum: str) -> StoredFile:
        path = self._content_path(checksum)
        if not path.is_file():
            raise FileStorageNotFoundError(checksum)
        try:
            content = path.read_bytes()
            meta_path = self._meta_path(checksum)
            metadata = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.exists() else {}
        except OSError as e:
            raise UnexpectedFileStorageError(str(e)) from e
        return StoredFile(content=content, metadata=metadata)

    def exists(self, checksum: str) -> bool:
        return self._content_path(checksum).is_file()

    def delete(self, checksum: str):
        try:
            self._content_path(checksum).unlink(missing_ok=True)
            self._meta_path(checksum).unlink(missing_ok=True)
        except OSError as e:
            raise UnexpectedFileStorageError(str(e)) from e

    def delete_all(self):
        if not self.root.exists():
            return
        try:
            for path in self.root.iterdir():
                if path.is_file():
                    path.unlink()
        except OSError as e:
            raise UnexpectedFileStorageError(str(e)) from e


def create_file_storage(config: Settings = settings) -> FileStorage:
    if config.FILE_STORAGE_TYPE == "fs":
        return LocalFileStorage(config.FILE_STORAGE_PATH)
    return MinioFileStorage(get_minio_client(), config.MINIO_BUCKET_NAME)
