"""
配置管理模块
知识库上传 / 解析 / 检索 / 后台任务的全部可调参数，统一从环境变量读取
"""
import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int, min_value: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return max(min_value, default)
    try:
        return max(min_value, int(raw.strip()))
    except Exception:
        return max(min_value, default)


def _env_float(name: str, default: float, min_value: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return max(min_value, default)
    try:
        return max(min_value, float(raw.strip()))
    except Exception:
        return max(min_value, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


MIB = 1024 * 1024

DEFAULT_ALLOWED_MIME_TYPES = [
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/html",
    "application/json",
    "text/markdown",
    "text/plain",
]


class StorageSettings(BaseModel):
    """S3 兼容对象存储"""
    endpoint: Optional[str] = None
    region: str = "us-east-1"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    bucket_prefix: str = "kb"
    force_path_style: bool = True
    timeout_seconds: float = 30.0


class PostgresSettings(BaseModel):
    host: str = "localhost"
    port: int = 5432
    user: str = "knowledge"
    password: str = "knowledge"
    database: str = "knowledge"

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class RedisSettings(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None

    @property
    def url(self) -> str:
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class RabbitSettings(BaseModel):
    host: str = "localhost"
    port: int = 5672
    user: str = "guest"
    password: str = "guest"
    vhost: str = "/"

    @property
    def url(self) -> str:
        return f"amqp://{self.user}:{self.password}@{self.host}:{self.port}/{self.vhost.lstrip('/')}"


class UploadPolicySettings(BaseModel):
    max_upload_bytes: int = 25 * MIB
    allowed_mime_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))
    uploads_per_uploader_per_minute: int = 20
    uploads_per_mode_per_minute: int = 120
    window_seconds: float = 60.0
    default_part_size: int = 5 * MIB


class ChunkingSettings(BaseModel):
    max_characters: int = 2000
    overlap: int = 200


class SearchSettings(BaseModel):
    vector_k: int = 24
    keyword_k: int = 24
    limit: int = 12
    keyword_boost: float = 0.35


class EmbeddingSettings(BaseModel):
    """OpenAI 兼容 Embedding 接口；未配置 api_key 时不做向量化"""
    model: str = "text-embedding-3-small"
    api_key: str = ""
    base_url: Optional[str] = None
    dimensions: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


class QueueSettings(BaseModel):
    ingestion_concurrency: int = 2
    deletion_concurrency: int = 2
    ingestion_attempts: int = 3
    ingestion_backoff_seconds: float = 5.0
    deletion_attempts: int = 2
    deletion_backoff_seconds: float = 2.0
    poll_interval_seconds: float = 0.5
    prefix: str = "kb"


class Settings(BaseModel):
    storage: StorageSettings = StorageSettings()
    postgres: PostgresSettings = PostgresSettings()
    redis: RedisSettings = RedisSettings()
    rabbitmq: RabbitSettings = RabbitSettings()
    upload_policy: UploadPolicySettings = UploadPolicySettings()
    chunking: ChunkingSettings = ChunkingSettings()
    search: SearchSettings = SearchSettings()
    embedding: EmbeddingSettings = EmbeddingSettings()
    queues: QueueSettings = QueueSettings()


def load_settings() -> Settings:
    """从环境变量构建配置（调用方负责先 load_dotenv）"""
    return Settings(
        storage=StorageSettings(
            endpoint=os.getenv("S3_ENDPOINT") or None,
            region=_env_str("S3_REGION", "us-east-1"),
            access_key=_env_str("S3_ACCESS_KEY_ID", "minioadmin"),
            secret_key=_env_str("S3_SECRET_ACCESS_KEY", "minioadmin"),
            bucket_prefix=_env_str("S3_BUCKET_PREFIX", "kb"),
            force_path_style=_env_bool("S3_FORCE_PATH_STYLE", True),
            timeout_seconds=_env_float("S3_TIMEOUT_SECONDS", 30.0, min_value=1.0),
        ),
        postgres=PostgresSettings(
            host=_env_str("POSTGRES_HOST", "localhost"),
            port=_env_int("POSTGRES_PORT", 5432),
            user=_env_str("POSTGRES_USER", "knowledge"),
            password=_env_str("POSTGRES_PASSWORD", "knowledge"),
            database=_env_str("POSTGRES_DB", "knowledge"),
        ),
        redis=RedisSettings(
            host=_env_str("REDIS_HOST", "localhost"),
            port=_env_int("REDIS_PORT", 6379),
            db=_env_int("REDIS_DB", 0, min_value=0),
            password=os.getenv("REDIS_PASSWORD") or None,
        ),
        rabbitmq=RabbitSettings(
            host=_env_str("RABBITMQ_HOST", "localhost"),
            port=_env_int("RABBITMQ_PORT", 5672),
            user=_env_str("RABBITMQ_USER", "guest"),
            password=_env_str("RABBITMQ_PASSWORD", "guest"),
            vhost=_env_str("RABBITMQ_VHOST", "/"),
        ),
        upload_policy=UploadPolicySettings(
            max_upload_bytes=_env_int("KB_MAX_UPLOAD_BYTES", 25 * MIB),
            allowed_mime_types=_env_list("KB_ALLOWED_MIME_TYPES", DEFAULT_ALLOWED_MIME_TYPES),
            uploads_per_uploader_per_minute=_env_int("KB_UPLOADS_PER_UPLOADER_PER_MINUTE", 20),
            uploads_per_mode_per_minute=_env_int("KB_UPLOADS_PER_MODE_PER_MINUTE", 120),
            window_seconds=_env_float("KB_RATE_WINDOW_SECONDS", 60.0, min_value=1.0),
            default_part_size=_env_int("KB_DEFAULT_PART_SIZE", 5 * MIB),
        ),
        chunking=ChunkingSettings(
            max_characters=_env_int("KB_CHUNK_MAX_CHARACTERS", 2000),
            overlap=_env_int("KB_CHUNK_OVERLAP", 200, min_value=0),
        ),
        search=SearchSettings(
            vector_k=_env_int("KB_SEARCH_VECTOR_K", 24),
            keyword_k=_env_int("KB_SEARCH_KEYWORD_K", 24),
            limit=_env_int("KB_SEARCH_LIMIT", 12),
            keyword_boost=_env_float("KB_SEARCH_KEYWORD_BOOST", 0.35),
        ),
        embedding=EmbeddingSettings(
            model=_env_str("KB_EMBEDDING_MODEL", "text-embedding-3-small"),
            api_key=os.getenv("KB_EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY", ""),
            base_url=os.getenv("KB_EMBEDDING_BASE_URL") or os.getenv("OPENAI_API_BASE") or None,
            dimensions=_env_int("KB_EMBEDDING_DIM", 0, min_value=0) or None,
        ),
        queues=QueueSettings(
            ingestion_concurrency=_env_int("INGESTION_CONCURRENCY", 2),
            deletion_concurrency=_env_int("DELETION_CONCURRENCY", 2),
            ingestion_attempts=_env_int("INGESTION_ATTEMPTS", 3),
            ingestion_backoff_seconds=_env_float("INGESTION_BACKOFF_SECONDS", 5.0),
            deletion_attempts=_env_int("DELETION_ATTEMPTS", 2),
            deletion_backoff_seconds=_env_float("DELETION_BACKOFF_SECONDS", 2.0),
            poll_interval_seconds=_env_float("QUEUE_POLL_INTERVAL_SECONDS", 0.5, min_value=0.01),
            prefix=_env_str("QUEUE_PREFIX", "kb"),
        ),
    )
