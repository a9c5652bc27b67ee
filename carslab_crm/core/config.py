from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global settings of the CarsLab signature service.
    Values are read from the environment and from the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "CarsLab CRM Signatures"
    api_prefix: str = "/api"
    debug: bool = False

    # Security / JWT
    secret_key: str = "changeme"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_minutes: int = 10080
    tablet_token_expire_minutes: int = 525600

    # Database
    database_url: str = "sqlite:///./carslab.db"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Storage: "local", "s3" or "google_drive"
    storage_provider: str = "local"
    carslab_storage: str = "_storage"

    # S3 / MinIO
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_bucket: str = "carslab-signatures"
    s3_region: str = "eu-central-1"

    # Google Drive (primary storage or backups)
    google_drive_client_id: Optional[str] = None
    google_drive_client_secret: Optional[str] = None
    google_drive_refresh_token: Optional[str] = None
    google_drive_folder_id: Optional[str] = None
    backup_enabled: bool = False

    # Signature sessions
    signature_session_ttl_minutes: int = 15
    signature_session_max_minutes: int = 30
    signature_request_rate_limit: int = 5
    signature_request_rate_window_seconds: int = 60

    # Tablets
    pairing_code_ttl_seconds: int = 300
    tablet_online_window_seconds: int = 120
    websocket_base_url: str = "ws://localhost:8000"

    # Side effects
    events_async: bool = True
    events_max_workers: int = 4

    def storage_root(self) -> str:
        return (self.carslab_storage or "_storage").strip()


@lru_cache
def get_settings() -> Settings:
    """Return the cached global settings instance."""
    return Settings()


settings = get_settings()
