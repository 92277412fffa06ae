import os
from dataclasses import dataclass, field
from decimal import Decimal


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class Settings:
    database_url: str = field(default_factory=lambda: os.getenv("CIRC_DB", "sqlite:///./circulation.db"))
    log_level: str = field(default_factory=lambda: os.getenv("CIRC_LOG", "INFO"))
    loan_period_days: int = field(default_factory=lambda: int(os.getenv("CIRC_LOAN_DAYS", "14")))
    fine_rate_per_day: Decimal = field(default_factory=lambda: Decimal(os.getenv("CIRC_FINE_RATE", "10.00")))
    # Open policy question: reservations are accepted for any title unless this is on.
    reserve_only_when_unavailable: bool = field(default_factory=lambda: _flag("CIRC_RESERVE_ONLY_UNAVAILABLE"))


settings = Settings()
