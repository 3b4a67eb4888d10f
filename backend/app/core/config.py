from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    JWT_SECRET: str
    JWT_ACCESS_MINUTES: int = 60

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    API_WORKERS: int = 2
    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    CORS_ALLOW_ORIGINS: str = "*"
    SECURITY_HEADERS_ENABLED: bool = True

    # Cron endpoints (charge-trials, dispatch-notifications)
    CRON_SECRET: str | None = None

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # MercadoPago
    MP_ACCESS_TOKEN: str | None = None
    MP_API_BASE_URL: str = "https://api.mercadopago.com"
    MP_SANDBOX: bool = False
    MP_WEBHOOK_SECRET: str | None = None
    MP_REQUIRE_WEBHOOK_SIGNATURE: bool = False
    MP_WEBHOOK_MAX_AGE_SECONDS: int = 300
    MP_HTTP_TIMEOUT_SECONDS: int = 20

    # Pricing / lifecycle
    BILLING_CURRENCY: str = "usd"
    BILLING_TRIAL_DAYS: int = 7
    BILLING_MODULE_PRICE_USD: float = 10.0
    BILLING_DEFAULT_USD_ARS_RATE: float = 1000.0
    BILLING_GRACE_DAYS: int = 2
    BILLING_SUSPEND_AFTER_FAILURES: int = 3
    BILLING_SUSPENSION_DAYS: int = 7
    TRIAL_CHARGE_BATCH_SIZE: int = 50
    WRITE_RETRY_ATTEMPTS: int = 3

    FX_RATE_URL: str = "https://api.exchangerate.host/latest?base=USD&symbols=ARS"
    FX_TIMEOUT_SECONDS: int = 8

    # Outbox / email (Resend)
    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_FROM: str = "noreply@retailsnappro.com"
    NOTIFY_MAX_ATTEMPTS: int = 5
    NOTIFY_BATCH_SIZE: int = 100

settings = Settings()
