# docvault/services/ingest/transformers.py
"""
文档级与切片级的清洗流水线。默认为空，由调用方按需注册步骤。
"""
import logging
from typing import Callable, List, Optional, Sequence

from langchain_core.documents import Document

from docvault.domain import metadata_keys

logger = logging.getLogger(__name__)

DocumentStep = Callable[[Document], Optional[Document]]


class DocumentTransformerPipeline:
    """
    依次对每个 Document 执行步骤；某一步返回 None 表示丢弃该文档。
    """

    def __init__(self, steps: Optional[Sequence[DocumentStep]] = None):
        self.steps: List[DocumentStep] = list(steps or [])

    def add_step(self, step: DocumentStep) -> "DocumentTransformerPipeline":
        self.steps.append(step)
        return self

    def transform(self, documents: Sequence[Document]) -> List[Document]:
        results = []
        for doc in documents:
            current: Optional[Document] = doc
            for step in self.steps:
                current = step(current)
                if current is None:
                    break
            if current is not None:
                results.append(current)
        return results


class TextSegmentTransformerPipeline(DocumentTransformerPipeline):
    """
    切片级流水线：在用户步骤执行完后为每个切片写入顺序号 (metadata.index) 并丢弃空白切片。
    """

    def transform(self, documents: Sequence[Document]) -> List[Document]:
        segments = [s for s in super().transform(documents) if s.page_content.strip()]
        for i, segment in enumerate(segments):
            segment.metadata[metadata_keys.INDEX] = i
        return segments
