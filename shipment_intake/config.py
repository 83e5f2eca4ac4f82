from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Shipment Intake"
    DATABASE_URL: str = "sqlite:///./shipment_intake.db"

    # Session tokens are issued elsewhere; we only verify them
    SECRET_KEY: str = "change-me"

    # Uploaded document images (persistent, served under /uploads)
    UPLOAD_DIR: str = "./uploads"
    MAX_UPLOAD_BYTES: int = 15 * 1024 * 1024

    # AI text-extraction capability
    AI_BASE_URL: str = "http://localhost:9000"
    AI_API_KEY: str = ""
    AI_TIMEOUT_SECONDS: float = 30.0
    EXTRACTION_MAX_ATTEMPTS: int = 3
    EXTRACTION_BACKOFF_SECONDS: float = 0.5
    DOCUMENT_TIMEOUT_SECONDS: float = 120.0

    # Confidence routing
    AUTO_APPROVE_THRESHOLD: float = 0.7
    REVIEW_THRESHOLD: float = 0.4
    TOTAL_TOLERANCE: float = 0.01

    # Entity matching
    MATCH_FLOOR: float = 0.5

    # Ledger contention handling
    LEDGER_MAX_RETRIES: int = 3
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.05

    # Read cache TTLs
    CACHE_TTL_INVENTORY_SECONDS: int = 3600
    CACHE_TTL_CUSTOMER_SECONDS: int = 4 * 3600
    CACHE_TTL_SUMMARY_SECONDS: int = 24 * 3600

    # Reporting callbacks for cache invalidation events (comma-separated)
    INVALIDATION_WEBHOOK_URLS: str = ""

    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
