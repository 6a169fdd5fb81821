from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_ENV: str = "dev"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./inboxpay.db"
    MIGRATIONS_ON_STARTUP: bool = True
    MIGRATION_LOCK_ID: int = 4815162342

    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    JWT_SECRET: str = "change-me"
    JWT_ISSUER: str = "inboxpay"
    JWT_AUDIENCE: str = "inboxpay-web"
    JWT_EXPIRES_MINUTES: int = 60 * 24 * 7

    # Fernet key; empty means a throwaway key is generated per process (dev only)
    TOKEN_ENCRYPTION_KEY: str = ""

    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google/callback"
    GOOGLE_SCOPES: str = (
        "https://www.googleapis.com/auth/gmail.readonly "
        "https://www.googleapis.com/auth/userinfo.email "
        "https://www.googleapis.com/auth/userinfo.profile"
    )
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60

    LLM_PROVIDER: str = "none"  # none | openai_chat_completions
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT_SECONDS: float = 60.0
    OPENAI_MAX_FILES: int = 5

    SYNC_LOOKBACK_MONTHS: int = 3
    SYNC_FIRST_PAGE_SIZE: int = 500
    SYNC_INCREMENTAL_PAGE_SIZE: int = 50
    SYNC_MAX_PAGES: int = 200
    SYNC_INTERVAL_SECONDS: int = 60
    SYNC_CLAIM_STALE_SECONDS: int = 1800
    GMAIL_QUERY_BASE: str = ""
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    COLLECT_MAX_FILES: int = 5
    COLLECT_MAX_PDFS: int = 5
    COLLECT_MAX_PDF_BYTES: int = 10 * 1024 * 1024
    COLLECT_MAX_IMAGE_BYTES: int = 5 * 1024 * 1024
    COLLECT_MIN_IMAGE_BYTES: int = 1024
    COLLECT_MIN_IMAGE_DIMENSION: int = 200
    IMAGE_DOWNLOAD_TIMEOUT_SECONDS: float = 10.0

    ANALYSIS_QUEUE_ENABLED: bool = True
    ANALYSIS_QUEUE_MAX_SIZE: int = 1000
    ANALYSIS_PRODUCER_PAGE_LIMIT: int = 50
    ANALYSIS_CONSUMER_BATCH_SIZE: int = 5
    ANALYSIS_PRODUCER_INTERVAL_SECONDS: float = 10.0
    ANALYSIS_CONSUMER_INTERVAL_SECONDS: float = 30.0

    DUPLICATE_DATE_TOLERANCE_DAYS: int = 1
    DUPLICATE_AMOUNT_EPSILON: float = 0.01

    @property
    def google_scopes(self) -> list[str]:
        return [s for s in self.GOOGLE_SCOPES.split() if s]

    @property
    def queue_loops_enabled(self) -> bool:
        return self.ANALYSIS_QUEUE_ENABLED and self.LLM_PROVIDER != "none"

settings = Settings()
