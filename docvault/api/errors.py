# docvault/api/errors.py
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from docvault.core.exceptions import (
    DocVaultError,
    DuplicateChecksumError,
    EmptyFileError,
    ForbiddenError,
    IllegalPermissionModificationError,
    IngestionInProgressError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

# 按顺序匹配，子类放在前面
_STATUS_MAP = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (DuplicateChecksumError, status.HTTP_409_CONFLICT),
    (IngestionInProgressError, status.HTTP_409_CONFLICT),
    (IllegalPermissionModificationError, status.HTTP_400_BAD_REQUEST),
    (EmptyFileError, status.HTTP_400_BAD_REQUEST),
]


def status_for(exc: DocVaultError) -> int:
    for exc_type, code in _STATUS_MAP:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def docvault_error_handler(request: Request, exc: DocVaultError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} 失败: {exc}", exc_info=exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(DocVaultError, docvault_error_handler)
