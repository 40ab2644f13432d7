import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    try:
        return float(value) if value else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./payments.db"
    jwt_secret: str | None = None

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None

    mpesa_consumer_key: str | None = None
    mpesa_consumer_secret: str | None = None
    mpesa_shortcode: str | None = None
    mpesa_passkey: str | None = None
    mpesa_callback_url: str | None = None
    mpesa_environment: str = "sandbox"
    mpesa_initiator_name: str = "testapi"
    mpesa_security_credential: str | None = None

    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_environment: str = "sandbox"
    paypal_return_url: str = "http://localhost:3000/payment/success"
    paypal_cancel_url: str = "http://localhost:3000/payment/cancel"
    paypal_brand_name: str = "ShopSphere"

    risk_enabled: bool = True
    risk_api_key: str | None = None
    risk_endpoint: str = "https://app.keverd.com"
    risk_block_threshold: int = 75
    risk_challenge_threshold: int = 50
    risk_timeout_seconds: float = 2.0

    provider_timeout_seconds: float = 15.0
    status_stale_after_seconds: int = 30
    notification_url: str | None = None

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment == "production":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


def load_settings() -> Settings:
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        database_url=os.getenv("DATABASE_URL") or "sqlite:///./payments.db",
        jwt_secret=os.getenv("JWT_SECRET"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        mpesa_consumer_key=os.getenv("MPESA_CONSUMER_KEY"),
        mpesa_consumer_secret=os.getenv("MPESA_CONSUMER_SECRET"),
        mpesa_shortcode=os.getenv("MPESA_SHORTCODE"),
        mpesa_passkey=os.getenv("MPESA_PASSKEY"),
        mpesa_callback_url=os.getenv("MPESA_CALLBACK_URL"),
        mpesa_environment=os.getenv("MPESA_ENVIRONMENT", "sandbox"),
        mpesa_initiator_name=os.getenv("MPESA_INITIATOR_NAME", "testapi"),
        mpesa_security_credential=os.getenv("MPESA_SECURITY_CREDENTIAL"),
        paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
        paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
        paypal_environment=os.getenv("PAYPAL_ENVIRONMENT", "sandbox"),
        paypal_return_url=os.getenv("PAYPAL_RETURN_URL", "http://localhost:3000/payment/success"),
        paypal_cancel_url=os.getenv("PAYPAL_CANCEL_URL", "http://localhost:3000/payment/cancel"),
        paypal_brand_name=os.getenv("PAYPAL_BRAND_NAME", "ShopSphere"),
        risk_enabled=_env_bool("RISK_ENABLED", True),
        risk_api_key=os.getenv("RISK_API_KEY"),
        risk_endpoint=os.getenv("RISK_ENDPOINT", "https://app.keverd.com"),
        risk_block_threshold=_env_int("RISK_BLOCK_THRESHOLD", 75),
        risk_challenge_threshold=_env_int("RISK_CHALLENGE_THRESHOLD", 50),
        risk_timeout_seconds=_env_float("RISK_TIMEOUT_SECONDS", 2.0),
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 15.0),
        status_stale_after_seconds=_env_int("STATUS_STALE_AFTER_SECONDS", 30),
        notification_url=os.getenv("NOTIFICATION_URL"),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
