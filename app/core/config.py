# core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional, List


class Settings(BaseSettings):
    """
    Centralized application configuration.
    Grouped logically for readability; every value can be overridden from the
    environment or a local .env file.
    """

    # ------------------------------------------------------------
    # Project / Runtime
    # ------------------------------------------------------------
    PROJECT_NAME: str = "Media Ingestion Pipeline"
    DEBUG: bool = False
    ENABLE_CORS: bool = True

    # HTTP / API
    FRONTEND_ENDPOINT: str = ""
    BACKEND_ENDPOINT: str = ""
    RATE_LIMIT_MIN: str = "120"
    API_PREFIX: str = "/api/v1"

    # ------------------------------------------------------------
    # AWS Core
    # ------------------------------------------------------------
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SESSION_TOKEN: Optional[str] = None

    # ------------------------------------------------------------
    # S3 Storage (raw uploads)
    # ------------------------------------------------------------
    RAW_UPLOADS_BUCKET: str = "media-raw-uploads"
    S3_CONNECT_TIMEOUT_SECS: float = 5.0
    S3_READ_TIMEOUT_SECS: float = 30.0

    """
    Transient storage faults are retried at the point of failure.
    Not-found and access-denied errors are never retried.
    """
    STORAGE_MAX_ATTEMPTS: int = 3
    STORAGE_BACKOFF_BASE_SECS: float = 0.5

    # ------------------------------------------------------------
    # Messaging (SQS)
    # ------------------------------------------------------------
    SQS_QUEUE_URL: str = "https://sqs.us-east-1.amazonaws.com/000000000000/media-analysis-queue"
    SQS_REGION: str = "us-east-1"
    SQS_ENABLE_PUBLISH: bool = True
    SQS_FIFO: bool = False
    SQS_CONNECT_TIMEOUT_SECS: float = 5.0
    SQS_READ_TIMEOUT_SECS: float = 10.0

    """
    Queue publish retry policy: bounded attempts with exponential backoff
    (base * 2**attempt plus jitter) before the record is marked failed.
    """
    DISPATCH_MAX_ATTEMPTS: int = Field(
        default=3,
        description="Publish attempts before declaring DispatchFailed"
    )
    DISPATCH_BACKOFF_BASE_SECS: float = Field(
        default=0.5,
        description="Base delay for exponential publish backoff"
    )

    # ------------------------------------------------------------
    # Persistence (SQLAlchemy)
    # ------------------------------------------------------------
    DATABASE_URL: str = Field(
        default="sqlite:///./media_pipeline.db",
        description="SQLAlchemy URL of the transactional record store"
    )
    DATABASE_ECHO: bool = False
    DATABASE_POOL_PRE_PING: bool = True

    # ------------------------------------------------------------
    # Redis Configuration
    # ------------------------------------------------------------

    """
    Redis connection settings for the dispatch dedupe markers
    """
    REDIS_HOST: str = Field(
        default="localhost",
        description="Redis server hostname (ElastiCache endpoint in production)"
    )
    REDIS_PORT: int = Field(
        default=6379,
        description="Redis server port"
    )
    REDIS_DB: int = Field(
        default=0,
        description="Redis database number (0-15)"
    )
    REDIS_PASSWORD: Optional[str] = Field(
        default=None,
        description="Redis password (optional, not needed with security groups)"
    )
    REDIS_SSL: bool = Field(
        default=False,
        description="Use TLS/SSL for Redis connection (required for ElastiCache with encryption)"
    )
    REDIS_SOCKET_TIMEOUT: int = Field(
        default=5,
        description="Socket timeout in seconds"
    )
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(
        default=5,
        description="Socket connect timeout in seconds"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=50,
        description="Maximum connections in the pool"
    )
    DISPATCH_DEDUPE_ENABLED: bool = Field(
        default=True,
        description="Guard job publishes with a Redis SET NX marker keyed by job id"
    )
    DISPATCH_DEDUPE_TTL: int = Field(
        default=86400,
        description="Lifetime of a dispatch marker in seconds"
    )

    # ------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------
    MAX_PAYLOAD_BYTES: int = 14 * 1024 * 1024
    MAX_VIDEO_BYTES: int = 100 * 1024 * 1024
    COMPRESSION_START_QUALITY: int = 80
    COMPRESSION_QUALITY_STEP: int = 10
    COMPRESSION_MIN_QUALITY: int = 30
    FORCE_JPEG_CONVERSION: bool = False
    NORMALIZE_TIMEOUT_SECS: float = 60.0
    NORMALIZE_WORKERS: int = 4

    VIDEO_EXTENSIONS: List[str] = [".mp4", ".mov", ".avi", ".webm", ".mkv", ".m4v"]
    IMAGE_EXTENSIONS: List[str] = [
        ".jpg", ".jpeg", ".png", ".gif", ".webp",
        ".heic", ".heif", ".bmp", ".tif", ".tiff",
    ]

    # ------------------------------------------------------------
    # Realtime notifications
    # ------------------------------------------------------------
    PROCESSING_ITEM_MAX_AGE_SECS: int = 600
    SSE_KEEPALIVE_SECS: float = 15.0
    MAX_SSE_CONNECTIONS: int = 200

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
