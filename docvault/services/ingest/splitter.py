from langchain_text_splitters import RecursiveCharacterTextSplitter, TextSplitter


def build_splitter(chunk_size: int, chunk_overlap: int) -> TextSplitter:
    """
    配置并返回文本分割器实例。
    """
    return RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,  # 块之间的重叠长度，有助于上下文连续性
        separators=["\n\n", "\n", "。", "！", "？", ". ", " ", ""],
        add_start_index=True
    )
