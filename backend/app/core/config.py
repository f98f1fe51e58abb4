from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"

    DATABASE_URL: str

    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ADMIN_MINUTES: int = 60

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    API_WORKERS: int = 2
    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Stripe transport (provider credentials live in the settings resolver)
    STRIPE_WEBHOOK_SKIP_VERIFICATION: bool = False
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Admin listings
    ADMIN_PAYMENT_REQUESTS_PER_PAGE: int = 20
    ADMIN_USAGE_COUNTERS_PER_PAGE: int = 25
    ADMIN_USAGE_TREND_BUCKETS: int = 30

settings = Settings()
