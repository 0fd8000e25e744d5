import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

PLAN_TYPES = ("basic", "premium")
BILLING_CYCLES = ("monthly", "yearly")
CURRENCIES = ("GBP", "USD", "EUR")

DEFAULT_CURRENCY = "GBP"

# Minor units, keyed by (plan_type, billing_cycle)
DEFAULT_PLAN_AMOUNTS = {
    ("basic", "monthly"): 999,
    ("basic", "yearly"): 9999,
    ("premium", "monthly"): 1999,
    ("premium", "yearly"): 19999,
}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./billing.db"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300
    stripe_timeout_seconds: float = 10.0
    jwt_secret: str = ""
    webhook_enforce_ordering: bool = False
    log_level: str = "INFO"
    price_ids: Dict[Tuple[str, str], str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Settings":
        price_ids = {}
        for plan_type in PLAN_TYPES:
            for cycle in BILLING_CYCLES:
                value = os.getenv(f"STRIPE_{plan_type.upper()}_{cycle.upper()}_PRICE_ID")
                if value:
                    price_ids[(plan_type, cycle)] = value

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
            stripe_timeout_seconds=float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            webhook_enforce_ordering=_env_bool("WEBHOOK_ENFORCE_ORDERING"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            price_ids=price_ids,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


@dataclass(frozen=True)
class PlanPrice:
    amount: int
    price_id: Optional[str]
    currency: str = DEFAULT_CURRENCY


class PlanCatalog:
    """
    Static (plan_type, billing_cycle) -> price table.

    Passed explicitly into SubscriptionManager so tests can build their own
    catalog instead of touching the environment.
    """

    def __init__(self, prices: Dict[Tuple[str, str], PlanPrice]):
        self._prices = dict(prices)

    def get(self, plan_type: str, billing_cycle: str) -> Optional[PlanPrice]:
        return self._prices.get((plan_type, billing_cycle))


def load_plan_catalog(settings: Settings) -> PlanCatalog:
    return PlanCatalog({
        key: PlanPrice(amount=amount, price_id=settings.price_ids.get(key))
        for key, amount in DEFAULT_PLAN_AMOUNTS.items()
    })


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
