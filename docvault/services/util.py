# -*- coding: utf-8 -*-
"""
工具模块 (util.py)
"""
import hashlib
from pathlib import Path

_CHUNK_SIZE = 1024 * 1024


def generate_checksum(file_path: Path) -> str:
    """
    计算文件的 MD5 (hex)。分块读取，避免大文件一次性载入内存。
    """
    digest = hashlib.md5()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()
