# docvault/services/ingest/loader.py
import logging
from pathlib import Path
from typing import List, Optional

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader, TextLoader
from langchain_core.documents import Document

from docvault.domain import metadata_keys

logger = logging.getLogger(__name__)

_PDF_TYPES = {"application/pdf"}
_DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
_TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".csv", ".json", ".html"}


def _pick_loader(path: Path, content_type: Optional[str]):
    suffix = path.suffix.lower()
    if content_type in _PDF_TYPES or suffix == ".pdf":
        return PyPDFLoader(str(path))
    if content_type in _DOCX_TYPES or suffix == ".docx":
        return Docx2txtLoader(str(path))
    # md 及其他 text/* 视为普通文本处理
    if (content_type or "").startswith("text/") or suffix in _TEXT_SUFFIXES:
        return TextLoader(str(path), encoding="utf-8")
    raise ValueError(f"不支持的文件类型: content_type={content_type}, suffix={suffix}")


def load_document(file_path: Path, content_type: Optional[str] = None) -> List[Document]:
    """
    解析单个文件为 LangChain Document 列表 (PDF 按页)。
    """
    path = Path(file_path)
    if not path.exists():
        logger.error(f"文件不存在: {file_path}")
        raise FileNotFoundError(f"文件不存在: {file_path}")

    logger.debug(f"正在从 {file_path} 加载文件 (content_type={content_type})...")
    docs = _pick_loader(path, content_type).load()

    for doc in docs:
        # 清理 loader 自带的本地临时路径，page 统一为 int
        doc.metadata.pop("source", None)
        if metadata_keys.PAGE in doc.metadata:
            try:
                doc.metadata[metadata_keys.PAGE] = int(doc.metadata[metadata_keys.PAGE])
            except (TypeError, ValueError):
                doc.metadata.pop(metadata_keys.PAGE)
    return docs
