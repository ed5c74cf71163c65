import os
from dataclasses import dataclass


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_DATABASE_URL = "sqlite:///./boxoffice.db"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL

    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: int | None = None

    gateway_backend: str = "mock"  # 'mock' | 'razorpay'
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com"
    gateway_timeout: float = 5.0

    webhook_secret: str = "dev-webhook-secret"
    mock_webhook_url: str = "http://localhost:8000/api/webhooks/payments"

    currency: str = "INR"
    # minor units (paise / cents)
    price_tolerance: int = 1
    settle_max_retries: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        gate = os.getenv("DB_GATE_LIMIT")
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(gate) if gate else None,
            gateway_backend=os.getenv("GATEWAY_BACKEND", "mock").lower(),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_api_base=os.getenv(
                "RAZORPAY_API_BASE", "https://api.razorpay.com"
            ),
            gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "5.0")),
            webhook_secret=os.getenv("WEBHOOK_SECRET", "dev-webhook-secret"),
            mock_webhook_url=os.getenv(
                "MOCK_WEBHOOK_URL",
                "http://localhost:8000/api/webhooks/payments",
            ),
            currency=os.getenv("CURRENCY", "INR").upper(),
            price_tolerance=int(os.getenv("PRICE_TOLERANCE", "1")),
            settle_max_retries=int(os.getenv("SETTLE_MAX_RETRIES", "5")),
        )
