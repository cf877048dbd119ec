from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "audiobook-upload-service"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    session_store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    session_ttl_seconds: int = 2 * 60 * 60
    chunk_ttl_seconds: int = 4 * 60 * 60
    stale_session_hours: float = 6
    scan_batch_size: int = 100
    janitor_enabled: bool = False
    janitor_interval_seconds: int = 900
    max_chunk_size_bytes: int = 10 * 1024 * 1024
    max_total_chunks: int = 10000
    default_audio_filename: str = "audio.mp3"
    database_url: str = "sqlite:///./audiobook_upload.db"
    database_auto_create: bool = True
    storage_backend: str = "local"
    storage_root: str = "./data"
    audio_prefix: str = "audio"
    cover_prefix: str = "covers"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "audiobook-upload-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True


settings = Settings()
