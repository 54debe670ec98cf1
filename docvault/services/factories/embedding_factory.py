import logging
from typing import Optional

from langchain_community.embeddings import DashScopeEmbeddings
from langchain_core.embeddings import Embeddings

from docvault.core.config import settings

logger = logging.getLogger(__name__)


def setup_embed_model(embed_model_name: Optional[str] = None) -> Embeddings:
    """
    配置并返回 Embedding 模型实例 (DashScope)。

    :param embed_model_name: DashScope 的模型名称，默认取 settings.EMBED_MODEL
    """
    model_name = embed_model_name or settings.EMBED_MODEL
    logger.info(f"正在设置 Embedding 模型 (DashScope: {model_name})...")

    if not settings.DASHSCOPE_API_KEY:
        raise ValueError("未找到 DASHSCOPE_API_KEY，请检查环境变量或 .env 配置")

    return DashScopeEmbeddings(
        model=model_name,
        dashscope_api_key=settings.DASHSCOPE_API_KEY
    )
