from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Replay API"
    debug: bool = False

    # Database (async PostgreSQL for prod, SQLite for dev)
    database_url: str = "sqlite+aiosqlite:///./replay.db"

    # Bearer token verification
    jwt_secret: str = "dev-secret-key"
    jwt_algorithm: str = "HS256"

    # S3-compatible object store (empty bucket/credentials = inline storage only)
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_endpoint_url: str = ""  # e.g. https://s3.us-west-004.backblazeb2.com
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_connect_timeout: float = 5.0
    s3_read_timeout: float = 30.0
    presign_expires_seconds: int = 3600
    presign_batch_max: int = 500
    cloud_auth_failure_threshold: int = 3
    probe_bytes: int = 1024

    # Payload constraints
    max_inline_payload_bytes: int = 50 * 1024 * 1024  # 50MB
    max_proxy_upload_bytes: int = 200 * 1024 * 1024  # 200MB
    max_chunk_bytes: int = 8 * 1024 * 1024  # 8MB
    max_total_chunks: int = 1000
    prefer_cloud_for_inline: bool = False

    # Chunked upload sessions
    upload_session_ttl_seconds: int = 30 * 60
    upload_sweep_interval_seconds: int = 5 * 60

    # Playback: "redirect" to a signed URL or "proxy" bytes through the API
    stream_mode: str = "redirect"

    # Speech-to-text (empty key = transcription disabled)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    transcription_model: str = "whisper-1"
    transcription_timeout_seconds: float = 120.0
    transcription_max_attempts: int = 5
    transcription_retry_delays: list[float] = [2.0, 4.0, 8.0, 15.0, 30.0]
    transcription_max_bytes: int = 25 * 1024 * 1024  # provider limit
    transcription_workers: int = 2
    transcription_backend: str = "local"  # "local" | "celery"
    batch_transcription_delay_seconds: float = 1.0
    transcription_stale_after_seconds: int = 15 * 60

    # Redis (for Celery task queue)
    redis_url: str = "redis://localhost:6379/0"

    # CORS
    cors_origins: list[str] = ["*"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def cloud_configured(self) -> bool:
        return bool(
            self.s3_bucket and self.s3_access_key_id and self.s3_secret_access_key
        )

    @property
    def transcription_configured(self) -> bool:
        return bool(self.openai_api_key)


settings = Settings()
