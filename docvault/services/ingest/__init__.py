from .embedder import EmbeddingResult, SegmentEmbedder
from .loader import load_document
from .orchestrator import IngestionOrchestrator, IngestionRequest
from .splitter import build_splitter
from .transformers import DocumentTransformerPipeline, TextSegmentTransformerPipeline

__all__ = [
    "EmbeddingResult",
    "SegmentEmbedder",
    "load_document",
    "IngestionOrchestrator",
    "IngestionRequest",
    "build_splitter",
    "DocumentTransformerPipeline",
    "TextSegmentTransformerPipeline",
]
