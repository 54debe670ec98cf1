import sys
from pathlib import Path
from typing import Literal, Optional
from dotenv import find_dotenv
from pydantic import computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_PATH = find_dotenv()
if not ENV_PATH:
    print(f"警告：未找到 .env 文件，将仅依赖环境变量。当前根目录: {PROJECT_ROOT}", file=sys.stderr)

class Settings(BaseSettings):
    """
    应用配置类
    """
    PROJECT_NAME: str = "docvault"

    # --- 文件存储 ---
    # minio: 对象存储; fs: 本地文件系统
    FILE_STORAGE_TYPE: Literal["minio", "fs"] = "minio"
    FILE_STORAGE_PATH: Path = PROJECT_ROOT / "data" / "files"
    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_BUCKET_NAME: str = "docvault-knowledge"
    MINIO_SECURE: bool = False

    # --- Redis 配置 ---
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    DEFAULT_QUEUE_NAME: str = "arq:queue"

    # --- Embedding ---
    DASHSCOPE_API_KEY: Optional[str] = None
    EMBED_MODEL: str = "text-embedding-v4"
    EMBEDDING_DIM: int = 1024

    # --- Embedding Store ---
    EMBEDDING_STORE_TYPE: Literal["elasticsearch"] = "elasticsearch"
    EMBEDDING_COLLECTION: str = "embeddings"
    ES_URL: str = "http://elasticsearch:9200"
    ES_INDEX_PREFIX: str = "docvault"
    ES_USER: Optional[str] = None
    ES_PASSWORD: Optional[str] = None
    ES_TIMEOUT: int = 30

    #db
    DATABASE_URL: str = f"sqlite+aiosqlite:///{PROJECT_ROOT / 'docvault.db'}"

    # --- 摄取 ---
    CHUNK_SIZE: int = 500
    CHUNK_OVERLAP: int = 50
    INGESTION_MAX_WORKERS: int = 4
    # 超过该时长仍为 PENDING 的知识会被 Watchdog 标记为 FAILED
    INGESTION_TIMEOUT_MINUTES: int = 60
    TEMP_DIR: Path = PROJECT_ROOT / "data" / "tmp"

    # --- 知识管理 ---
    KNOWLEDGE_REJECT_DUPLICATE_CHECKSUM: bool = False
    PERMISSION_SYNC_MAX_ATTEMPTS: int = 3
    PERMISSION_SYNC_WAIT_SECONDS: float = 0.5

    # --- 检索 ---
    TOP_K: int = 5
    MIN_SCORE: float = 0.0

    # --- 对话记忆 ---
    CHAT_MEMORY_WINDOW: Literal["message", "token"] = "message"
    CHAT_MEMORY_MAX_MESSAGES: Optional[int] = 20
    CHAT_MEMORY_MAX_TOKENS: Optional[int] = None
    CHAT_MEMORY_TOKENIZER_PROVIDER: Optional[str] = "openai"
    CHAT_MEMORY_TOKENIZER_MODEL: str = "gpt-4o-mini"
    CHAT_MEMORY_KEY_PREFIX: str = "docvault:chat"

    # log
    LOG_DIR: Path = PROJECT_ROOT / "logs"
    LOG_LEVEL: str = "INFO"

    # security
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    ADMIN_ROLE: str = "admin"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_async_db_url(cls, v: str | None) -> str:
        if isinstance(v, str):

            if v.startswith("postgresql+psycopg2://"):
                return v.replace("postgresql+psycopg2://", "postgresql+asyncpg://", 1)

            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+asyncpg://", 1)

            if v.startswith("postgres://"):
                return v.replace("postgres://", "postgresql+asyncpg://", 1)
        return v

    @computed_field
    @property
    def LOG_FILE_PATH(self) -> Path:
        return self.LOG_DIR / "docvault.log"

    @computed_field
    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @computed_field
    @property
    def EMBEDDING_INDEX_NAME(self) -> str:
        # ES 索引名必须小写
        return f"{self.ES_INDEX_PREFIX}_{self.EMBEDDING_COLLECTION}".lower()

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding='utf-8',
        extra='ignore'
    )

try:
    settings = Settings()
except Exception as e:
    print(f"错误：加载配置失败。\n{e}", file=sys.stderr)
    sys.exit(1)
