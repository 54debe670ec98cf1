# docvault/core/exceptions.py
"""
领域异常定义。

路由层通过 docvault.api.errors 中注册的 exception handler 将其映射为 HTTP 状态码；
Worker / 编排器内部只记录日志，不向外抛出。
"""


class DocVaultError(Exception):
    """所有领域异常的基类"""


class StartupError(DocVaultError):
    """启动自检失败 (存储不可达 / 配置非法)，进程不应继续接收请求"""


class NotFoundError(DocVaultError):
    pass


class KnowledgeNotFoundError(NotFoundError):
    def __init__(self, knowledge_id):
        super().__init__(f"Knowledge {knowledge_id} not found")
        self.knowledge_id = knowledge_id


class UserNotFoundError(NotFoundError):
    def __init__(self, username: str):
        super().__init__(f"User '{username}' not found")
        self.username = username


class FileStorageNotFoundError(NotFoundError):
    def __init__(self, checksum: str):
        super().__init__(f"File with checksum {checksum} not found in file storage")
        self.checksum = checksum


class UnexpectedFileStorageError(DocVaultError):
    pass


class EmbeddingStoreError(DocVaultError):
    pass


class DuplicateChecksumError(DocVaultError):
    def __init__(self, checksum: str):
        super().__init__(f"Knowledge with checksum {checksum} already exists")
        self.checksum = checksum


class IngestionInProgressError(DocVaultError):
    def __init__(self, knowledge_id):
        super().__init__(f"Knowledge {knowledge_id} is still being ingested")
        self.knowledge_id = knowledge_id


class IngestionFailure(DocVaultError):
    """摄取流水线内部失败，只会被记录为 FAILED 状态"""


class IllegalPermissionModificationError(DocVaultError):
    pass


class PermissionSyncError(DocVaultError):
    def __init__(self, knowledge_id, cause: BaseException | None = None):
        super().__init__(f"Failed to sync permission metadata of knowledge {knowledge_id}: {cause}")
        self.knowledge_id = knowledge_id
        self.cause = cause


class EmptyFileError(DocVaultError):
    def __init__(self, file_name: str):
        super().__init__(f"File '{file_name}' is empty")
        self.file_name = file_name


class ForbiddenError(DocVaultError):
    pass
