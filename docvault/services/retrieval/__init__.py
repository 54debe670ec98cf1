from .embedding_store import EmbeddingMatch, EmbeddingStore
from .factory import create_embedding_store
from .retriever import PermissionAwareRetriever

__all__ = [
    "EmbeddingMatch",
    "EmbeddingStore",
    "create_embedding_store",
    "PermissionAwareRetriever",
]
