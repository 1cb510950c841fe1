import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _split(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./billing.db"
    db_timeout_seconds: float = 5.0
    jwt_secret: Optional[str] = None
    subscription_period_days: int = 30
    provider_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    yookassa_shop_id: Optional[str] = None
    yookassa_secret_key: Optional[str] = None
    yookassa_trusted_networks: List[str] = field(default_factory=list)

    cloudpayments_public_id: Optional[str] = None
    cloudpayments_api_secret: Optional[str] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            db_timeout_seconds=float(os.getenv("DB_TIMEOUT_SECONDS", cls.db_timeout_seconds)),
            jwt_secret=os.getenv("JWT_SECRET"),
            subscription_period_days=int(
                os.getenv("SUBSCRIPTION_PERIOD_DAYS", cls.subscription_period_days)
            ),
            provider_timeout_seconds=float(
                os.getenv("PROVIDER_TIMEOUT_SECONDS", cls.provider_timeout_seconds)
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            yookassa_shop_id=os.getenv("YOOKASSA_SHOP_ID"),
            yookassa_secret_key=os.getenv("YOOKASSA_SECRET_KEY"),
            yookassa_trusted_networks=_split(os.getenv("YOOKASSA_TRUSTED_NETWORKS")),
            cloudpayments_public_id=os.getenv("CLOUDPAYMENTS_PUBLIC_ID"),
            cloudpayments_api_secret=os.getenv("CLOUDPAYMENTS_API_SECRET"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
