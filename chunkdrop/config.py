from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunkdrop"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 3000
    database_url: str = "sqlite:///./chunkdrop.db"
    db_auto_create: bool = True
    upload_dir: str = "./uploads"
    temp_dir: str = ""
    max_chunk_bytes: int = 10 * 1024 * 1024
    assembly_buffer_bytes: int = 4 * 1024 * 1024
    read_block_bytes: int = 64 * 1024
    storage_backend: str = "local"
    storage_root: str = "./data"
    bucket: str = "vanish"
    aws_region: str = "us-east-1"
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    auth_mode: str = "hybrid"
    api_key_mappings: str = "dev-key:dev-user"
    admin_user_ids: str = "dev-user"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    handoff_enabled: bool = True
    handoff_max_attempts: int = 3
    handoff_retry_backoff_seconds: float = 1.0
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_session_ttl_seconds: int = 86400
    tracing_enabled: bool = False
    tracing_service_name: str = "chunkdrop"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cors_origins: str = "http://localhost:5173"

    def temp_path(self) -> Path:
        if self.temp_dir:
            return Path(self.temp_dir)
        return Path(self.upload_dir) / "temp"

    def cors_origin_list(self) -> list[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]


settings = Settings()
