"""
Cafe Amore — Configuration
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "cafe-amore"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── PostgreSQL ────────────────────────────────────────────
    POSTGRES_HOST: str = "cafe-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "cafe_db"
    POSTGRES_USER: str = "cafe_user"
    POSTGRES_PASSWORD: str = "cafe_pass"
    DATABASE_URL: str = ""  # full async URL override (e.g. sqlite+aiosqlite://)

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis ─────────────────────────────────────────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def celery_broker_url(self) -> str:
        return self.redis_url

    @property
    def celery_result_backend(self) -> str:
        return self.redis_url

    # ── Auth (tokens issued by the external AuthProvider) ─────
    JWT_SECRET_KEY: str = "CHANGE_ME_IN_PRODUCTION"
    JWT_ALGORITHM: str = "HS256"
    STAFF_ROLES: list[str] = ["admin", "cashier", "employee"]

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 5
    OPT_LOCK_BASE_DELAY_MS: int = 50      # base exponential backoff delay in ms
    OPT_LOCK_MAX_DELAY_MS: int = 1000     # max backoff cap in ms
    OPT_LOCK_JITTER_MS: int = 50          # random jitter range in ms

    # ── Idempotency / Guest carts ─────────────────────────────
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400
    GUEST_CART_PREFIX: str = "guest_cart:"
    GUEST_CART_TTL_SECONDS: int = 60 * 60 * 24 * 30

    # ── PayMongo ──────────────────────────────────────────────
    PAYMONGO_API_URL: str = "https://api.paymongo.com/v1"
    PAYMONGO_SECRET_KEY: str = ""
    PAYMONGO_WEBHOOK_SECRET: str = ""
    # Max age of a signed webhook timestamp (t=) in seconds; 0 accepts any age
    PAYMONGO_WEBHOOK_TOLERANCE_SECONDS: int = 300
    PAYMONGO_PAYMENT_METHOD_TYPES: list[str] = ["gcash"]
    CURRENCY: str = "PHP"
    CHECKOUT_SUCCESS_URL: str = "https://lastcafeamore.netlify.app/customer-status.html"
    CHECKOUT_CANCEL_URL: str = "https://lastcafeamore.netlify.app/cart.html"
    MIN_CHECKOUT_AMOUNT: int = 100  # centavos

    # ── Order Lifecycle ───────────────────────────────────────
    PENDING_AUTO_CANCEL_SECONDS: int = 60
    AWAITING_PAYMENT_AUTO_CANCEL_SECONDS: int = 300
    AUTO_CANCEL_SWEEP_INTERVAL_SECONDS: float = 15.0
    QUEUE_NUMBER_WIDTH: int = 4

    # ── Delivery ──────────────────────────────────────────────
    # Fee per barangay in centavos; barangays not listed are outside the delivery area
    DELIVERY_FEES: dict[str, int] = {"Alima": 5000, "Aniban I": 6000}

    # ── Outbound HTTP ─────────────────────────────────────────
    HTTP_TIMEOUT_SECONDS: float = 10.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_RETRY_BASE_DELAY_MS: int = 200

    # ── SSE ───────────────────────────────────────────────────
    SSE_KEEPALIVE_INTERVAL_SECONDS: int = 15
    SSE_RETRY_MILLISECONDS: int = 3000

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
