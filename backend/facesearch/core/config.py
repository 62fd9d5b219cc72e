from typing import List, Optional

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "FaceVideoSearch"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"

    # Server binding and CORS
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Upload limits (10 MiB)
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # Per-client rate limits enforced before RPC dispatch
    RATE_LIMIT_WINDOW_MINUTES: int = 15
    RATE_LIMIT_MAX_REQUESTS: int = 100
    FACE_RATE_LIMIT_PER_MINUTE: int = 10
    SEARCH_RATE_LIMIT_PER_5_MINUTES: int = 3

    # Operator tokens are signed with this secret (HS256)
    SESSION_SECRET: str = "dev-session-secret-change-me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Base64 encoded 32 byte AES key. A random key is generated per process when unset.
    ENCRYPTION_KEY: Optional[str] = None

    MODELS_PATH: str = "/app/ml_weights"
    TEMP_DIR: str = "/app/temp"
    LOG_DIR: str = "/app/logs"
    LOG_LEVEL: str = "INFO"

    # Optional JSON file replacing the default site registry at start-up
    SITE_REGISTRY_PATH: Optional[str] = None

    # ArcFace w600k_mbf produces 512-d vectors
    EMBEDDING_DIM: int = 512

    # Session lifecycle
    SESSION_TTL_MINUTES: int = 30
    SESSION_DELETE_AFTER_HOURS: int = 24
    SWEEP_INTERVAL_SECONDS: int = 300
    DEFAULT_THRESHOLD: float = 0.7

    # Timeouts (seconds)
    MODEL_INIT_TIMEOUT: float = 10.0
    FACE_DETECTION_TIMEOUT: float = 15.0
    SITE_FETCH_TIMEOUT: float = 10.0
    THUMBNAIL_TIMEOUT: float = 5.0

    @computed_field
    @property
    def THUMBNAIL_DIR(self) -> str:
        # Pipeline scratch lives below the session temp root
        return f"{self.TEMP_DIR.rstrip('/')}/thumbnails"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


# Instantiate the settings object to be imported across the application
settings = Settings()
