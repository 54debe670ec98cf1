# docvault/api/routes/knowledge.py

import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from fastapi.concurrency import run_in_threadpool

from docvault.api import deps
from docvault.bootstrap import Services
from docvault.domain.models import KnowledgeRead
from docvault.domain.schemas import (
    LabelUpdateRequest,
    PermissionRead,
    PermissionSetRequest,
    TagRequest,
    TextKnowledgeCreate,
)
from docvault.services.security.identity import Identity

logger = logging.getLogger(__name__)
router = APIRouter()


def _save_upload_to_temp(upload_file: UploadFile, temp_dir: Path) -> Path:
    """
    UploadFile -> 临时文件。调用方负责删除。
    """
    temp_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(upload_file.filename or "").suffix
    fd, name = tempfile.mkstemp(suffix=suffix, dir=temp_dir)
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(upload_file.file, out)
    finally:
        upload_file.file.close()
    return Path(name)


def _require_filename(upload_file: UploadFile) -> str:
    if not upload_file.filename:
        raise HTTPException(status_code=400, detail="文件名不能为空")
    return upload_file.filename


# ------------------ 查询 ------------------

@router.get("", response_model=List[KnowledgeRead])
async def list_knowledge(
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    """列出当前调用方可见的知识"""
    items = await services.knowledge_access.list(identity)
    return [KnowledgeRead.from_knowledge(k) for k in items]


@router.get("/{knowledge_id}", response_model=KnowledgeRead)
async def get_knowledge(
    knowledge_id: uuid.UUID,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.get(identity, knowledge_id)
    return KnowledgeRead.from_knowledge(knowledge)


@router.get("/{knowledge_id}/file")
async def download_file(
    knowledge_id: uuid.UUID,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    named = await services.knowledge_access.get_file(identity, knowledge_id)
    return Response(
        content=named.content,
        media_type=named.content_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(named.name)}"},
    )


# ------------------ 入库 / 更新 ------------------

@router.post("/upload", response_model=KnowledgeRead)
async def upload_file(
    file: UploadFile = File(...),
    label: Optional[str] = Form(default=None),
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    file_name = _require_filename(file)
    content_type = file.content_type or "application/octet-stream"
    temp_path = await run_in_threadpool(_save_upload_to_temp, file, services.knowledge_service.temp_dir)
    try:
        knowledge = await services.knowledge_access.add_source(
            identity, temp_path, file_name, content_type, label=label
        )
    finally:
        temp_path.unlink(missing_ok=True)
    return KnowledgeRead.from_knowledge(knowledge)


@router.post("/text", response_model=KnowledgeRead)
async def add_text(
    req: TextKnowledgeCreate,
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.add_text(identity, req.text, label=req.label)
    return KnowledgeRead.from_knowledge(knowledge)


@router.put("/{knowledge_id}/file", response_model=KnowledgeRead)
async def update_file(
    knowledge_id: uuid.UUID,
    file: UploadFile = File(...),
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    file_name = _require_filename(file)
    content_type = file.content_type or "application/octet-stream"
    temp_path = await run_in_threadpool(_save_upload_to_temp, file, services.knowledge_service.temp_dir)
    try:
        knowledge = await services.knowledge_access.update_source(
            identity, knowledge_id, temp_path, file_name, content_type
        )
    finally:
        temp_path.unlink(missing_ok=True)
    return KnowledgeRead.from_knowledge(knowledge)


@router.post("/{knowledge_id}/retry", response_model=KnowledgeRead)
async def retry_ingestion(
    knowledge_id: uuid.UUID,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    """重新摄取失败的知识"""
    knowledge = await services.knowledge_access.retry_failed_ingestion(identity, knowledge_id)
    return KnowledgeRead.from_knowledge(knowledge)


@router.delete("/{knowledge_id}")
async def delete_knowledge(
    knowledge_id: uuid.UUID,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    await services.knowledge_access.delete(identity, knowledge_id)
    return {"message": "Knowledge deleted"}


# ------------------ 权限 ------------------

@router.get("/{knowledge_id}/permission/{username}", response_model=PermissionRead)
async def get_permission(
    knowledge_id: uuid.UUID,
    username: str,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.get(identity, knowledge_id)
    return PermissionRead(
        knowledge_id=str(knowledge.id),
        username=username,
        permission=knowledge.get_permission(username),
    )


@router.put("/{knowledge_id}/permission/{username}", response_model=KnowledgeRead)
async def set_permission(
    knowledge_id: uuid.UUID,
    username: str,
    req: PermissionSetRequest,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    try:
        knowledge = await services.knowledge_access.set_permission(
            identity, knowledge_id, username, req.permission
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return KnowledgeRead.from_knowledge(knowledge)


@router.delete("/{knowledge_id}/permission/{username}", response_model=KnowledgeRead)
async def remove_permission(
    knowledge_id: uuid.UUID,
    username: str,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.remove_permission(identity, knowledge_id, username)
    return KnowledgeRead.from_knowledge(knowledge)


# ------------------ 标签 / 名称 ------------------

@router.put("/{knowledge_id}/label", response_model=KnowledgeRead)
async def set_label(
    knowledge_id: uuid.UUID,
    req: LabelUpdateRequest,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.set_label(identity, knowledge_id, req.label)
    return KnowledgeRead.from_knowledge(knowledge)


@router.post("/{knowledge_id}/tags", response_model=KnowledgeRead)
async def add_tag(
    knowledge_id: uuid.UUID,
    req: TagRequest,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.add_tag(identity, knowledge_id, req.tag)
    return KnowledgeRead.from_knowledge(knowledge)


@router.delete("/{knowledge_id}/tags/{tag}", response_model=KnowledgeRead)
async def remove_tag(
    knowledge_id: uuid.UUID,
    tag: str,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    knowledge = await services.knowledge_access.remove_tag(identity, knowledge_id, tag)
    return KnowledgeRead.from_knowledge(knowledge)
