from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "AdSpend Billing"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"
    LOG_LEVEL: str = "INFO"

    # Database (SQLite fallback for local dev)
    DATABASE_URL: str = "sqlite:///./adspend.db"

    # Internal API access (sent as X-Admin-Token)
    ADMIN_API_TOKEN: str = ""

    # Error tracking
    SENTRY_DSN: str = ""

    # Resend Email
    RESEND_API_KEY: str = ""
    FROM_EMAIL: str = "AdSpend Billing <billing@example.com>"

    # Circuit breaker
    CIRCUIT_BREAKER_MAX_FAILURES: int = 5
    CIRCUIT_BREAKER_RETRY_TIMEOUT: float = 300.0  # seconds (5 minutes)
    CIRCUIT_BREAKER_BACKEND: str = "memory"  # "memory" or "database"

    # Retry policy defaults
    RETRY_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY_MS: int = 1000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_MS: int = 30000

    # Ad spend billing
    PREPAID_DAYS: int = 7
    LOW_BALANCE_DAYS: int = 3
    GRACE_PERIOD_HOURS: int = 24
    FAILED_BUDGET_MULTIPLIER: float = 0.5
    DEFAULT_DAILY_BUDGET: float = 50.0  # Used when no active campaign has a budget
    MIN_TOP_UP: float = 50.0
    MAX_TOP_UP: float = 10000.0

    # Daily billing job
    BILLING_WORKER_CONCURRENCY: int = 4
    BILLING_JOB_TIMEOUT_SECONDS: float = 0.0  # 0 disables the overall deadline
    BILLING_JOB_GRACE_SECONDS: float = 60.0  # in-flight customers get this long past the deadline before cancellation
    BILLING_CRON_HOUR: int = 6  # UTC, after ad networks finalize yesterday's spend
    RUN_SCHEDULER: bool = True

    # "package.module:factory" returning BillingCollaborators (host application wiring)
    BILLING_COLLABORATORS_FACTORY: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
