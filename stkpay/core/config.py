"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.

The Settings object is built once at process start (see stkpay.main.create_app)
and handed to services explicitly; nothing reads the environment at call time.
"""
from dataclasses import dataclass
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"
# payment_intents.amount is a 32-bit INTEGER column
MAX_AMOUNT_CEILING = 2**31 - 1


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"  # local, test, staging, production
    # Trusted header carrying the caller's user id (set by the upstream auth layer)
    caller_id_header: str = "X-User-Id"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default
    db_create_all: bool = False  # create tables on startup (local/dev only)

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str | None = None  # circuit breaker state; in-memory when unset
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # M-PESA (Daraja STK push)
    # ===========================================
    mpesa_env: str = "sandbox"  # sandbox, production
    mpesa_base_url: str = ""  # empty = derived from mpesa_env
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""  # Paybill or Till number
    mpesa_passkey: str = ""  # LNMO passkey
    mpesa_callback_url: str = ""  # must be HTTPS
    mpesa_mode: str = "paybill"  # paybill, till
    mpesa_timeout: float = 12.0
    mpesa_token_retries: int = 2
    # Optional shared secret expected in X-Callback-Token on the callback endpoint
    mpesa_callback_token: str = ""
    mpesa_default_account_ref: str = "STKPAY"
    mpesa_default_description: str = "Payment"
    # Daraja per-transaction ceiling (KES)
    mpesa_max_amount: int = 250_000

    # ===========================================
    # BILLING (tier upgrade prices, KES)
    # ===========================================
    tier_price_gold: int = 199
    tier_price_platinum: int = 499

    # ===========================================
    # STATUS POLLING
    # ===========================================
    status_processing_after_seconds: int = 10
    # Dev/test only: auto-confirm PENDING intents after this many seconds.
    # Refused when app_env=production.
    simulate_callbacks: bool = False
    simulate_callback_after_seconds: int = 30

    # ===========================================
    # ENTITLEMENT SWEEP
    # ===========================================
    entitlement_sweep_batch_size: int = 100
    entitlement_sweep_grace_seconds: int = 300

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("app_env", "mpesa_env", "mpesa_mode")
    @classmethod
    def normalize_lower(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("mpesa_mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        if v not in ("paybill", "till"):
            raise ValueError("mpesa_mode must be 'paybill' or 'till'")
        return v

    @field_validator("mpesa_max_amount")
    @classmethod
    def validate_max_amount(cls, v: int) -> int:
        if not 1 <= v <= MAX_AMOUNT_CEILING:
            raise ValueError(f"mpesa_max_amount must be between 1 and {MAX_AMOUNT_CEILING}")
        return v

    @field_validator("tier_price_gold", "tier_price_platinum")
    @classmethod
    def validate_price(cls, v: int) -> int:
        if v < 1:
            raise ValueError("tier prices must be at least 1 KES")
        return v

    @model_validator(mode="after")
    def forbid_simulation_in_production(self) -> "Settings":
        """The auto-confirm path fabricates payments; never allow it in production."""
        if self.is_production and self.simulate_callbacks:
            raise ValueError("simulate_callbacks cannot be enabled when app_env=production")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env in ("production", "prod")

    @property
    def callbacks_simulated(self) -> bool:
        return self.simulate_callbacks and not self.is_production

    @property
    def resolved_mpesa_base_url(self) -> str:
        if self.mpesa_base_url:
            return self.mpesa_base_url.rstrip("/")
        return PRODUCTION_BASE_URL if self.mpesa_env == "production" else SANDBOX_BASE_URL

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@dataclass(frozen=True)
class GatewayConfig:
    """Provider configuration for the Daraja client and the callback endpoint."""

    environment: str
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    mode: str = "paybill"
    timeout: float = 12.0
    token_retries: int = 2
    callback_token: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            environment=settings.mpesa_env,
            base_url=settings.resolved_mpesa_base_url,
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey,
            callback_url=settings.mpesa_callback_url,
            mode=settings.mpesa_mode,
            timeout=settings.mpesa_timeout,
            token_retries=settings.mpesa_token_retries,
            callback_token=settings.mpesa_callback_token.strip(),
        )

    def missing_fields(self) -> list[str]:
        required = {
            "MPESA_CONSUMER_KEY": self.consumer_key,
            "MPESA_CONSUMER_SECRET": self.consumer_secret,
            "MPESA_SHORTCODE": self.shortcode,
            "MPESA_PASSKEY": self.passkey,
            "MPESA_CALLBACK_URL": self.callback_url,
        }
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    return Settings()
