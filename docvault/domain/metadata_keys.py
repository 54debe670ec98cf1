# docvault/domain/metadata_keys.py
# 向量 payload (metadata) 中的字段名，写入端与查询端共用

KNOWLEDGE_ID = "knowledge_id"
INGESTED_AT = "ingested_at"
PERMISSION = "permission"
PAGE = "page"
INDEX = "index"
CHECKSUM = "checksum"
CONTENT_TYPE = "content_type"
SOURCE = "source"
