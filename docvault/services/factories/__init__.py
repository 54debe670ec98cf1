from .embedding_factory import setup_embed_model

__all__ = ["setup_embed_model"]
