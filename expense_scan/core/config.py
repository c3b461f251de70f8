from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    DATABASE_URL: str = "sqlite:///./expense_scan.db"
    UPLOAD_DIR: str = "uploads"

    OPENAI_API_KEY: str = ""
    OPENAI_OCR_MODEL: str = "gpt-4o-mini"

    # recognition retry policy
    OCR_MAX_ATTEMPTS: int = 3
    OCR_RETRY_BASE_SECONDS: float = 1.0
    OCR_MAX_IMAGE_MB: int = 20

    # POST /receipts/scan payload limit (decoded bytes)
    DIRECT_MAX_IMAGE_MB: float = 2.0

    QUEUE_STORAGE_KEY: str = "offline_queue"
    QUEUE_MAX_RETRIES: int = 3
    QUEUE_MAX_AGE_DAYS: int = 7
    QUEUE_BACKOFF_BASE_SECONDS: float = 1.0

    CONNECTIVITY_PROBE_URL: str = "https://api.openai.com/v1/models"
    CONNECTIVITY_PROBE_TIMEOUT_SECONDS: float = 5.0
    WORKER_POLL_SECONDS: int = 30

    category_confidence_threshold: float = 0.55
    history_limit: int = 500


settings = Settings()
