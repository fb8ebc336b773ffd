"""
Engine configuration module.

Reads the environment once at import and exports the tariff profile, retry
policy, validation thresholds and storage/backend locations used by the
device engine and the backend service.

Supported tariff profiles:
  IDR:  Rupiah village water tariff (1-10 m3 @ 1,500, 11+ @ 2,000, meter fee 5,000)
  DEMO: scaled-down tariff used in training material (150 / 200 / 500)
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class TariffProfile:
    code: str
    name: str
    currency: str                       # ISO 4217
    unit_rate: float                    # per unit, first tier
    upper_rate: float                   # per unit above the threshold
    tier_threshold: int                 # units billed at unit_rate
    service_fee: float                  # fixed, once per bill


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0             # seconds before the second attempt
    multiplier: float = 2.0
    max_delay: float = 5.0

    def delay(self, attempt: int) -> float:
        """Backoff after the given 1-based failed attempt (1s, 2s, 4s, capped)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


IDR = TariffProfile(
    code="IDR",
    name="Village water (Rupiah)",
    currency="IDR",
    unit_rate=1500,
    upper_rate=2000,
    tier_threshold=10,
    service_fee=5000,
)

DEMO = TariffProfile(
    code="DEMO",
    name="Training tariff",
    currency="IDR",
    unit_rate=150,
    upper_rate=200,
    tier_threshold=10,
    service_fee=500,
)

_REGISTRY: Dict[str, TariffProfile] = {
    "IDR": IDR,
    "DEMO": DEMO,
}


def get_tariff(code: Optional[str] = None) -> TariffProfile:
    """Return the active tariff profile.

    Reads TARIFF_PROFILE if *code* is not passed explicitly. Defaults to 'IDR'.
    """
    code = (code or os.environ.get("TARIFF_PROFILE", "IDR")).upper()
    profile = _REGISTRY.get(code)
    if profile is None:
        raise ValueError(f"Unknown TARIFF_PROFILE '{code}'. Valid: {sorted(_REGISTRY)}")
    return profile


def get_retry_policy() -> RetryPolicy:
    """Build the sync retry policy from SYNC_* environment variables."""
    return RetryPolicy(
        max_attempts=int(os.environ.get("SYNC_MAX_ATTEMPTS", "3")),
        base_delay=float(os.environ.get("SYNC_BASE_DELAY", "1.0")),
        multiplier=float(os.environ.get("SYNC_BACKOFF_MULTIPLIER", "2.0")),
        max_delay=float(os.environ.get("SYNC_MAX_DELAY", "5.0")),
    )


# ---------------------------------------------------------------------------
# Validation thresholds
# ---------------------------------------------------------------------------

MIN_READING = 0
MAX_READING = 999_999
ANOMALY_MULTIPLIER = 2.0            # usage above 200% of the rolling average
ANOMALY_WINDOW = 5                  # preceding intervals in the rolling average
VERY_HIGH_USAGE = 100               # units in one cycle
MAX_DISCOUNT_PERCENTAGE = 100
MAX_DISCOUNT_AMOUNT = 1_000_000
MIN_REASON_LENGTH = 5

# ---------------------------------------------------------------------------
# Storage, backend and scheduling
# ---------------------------------------------------------------------------

LOCAL_DB_PATH = os.environ.get(
    "METER_LOCAL_DB", os.path.join(os.path.dirname(__file__), "meter_local.db"),
)
BACKEND_URL = os.environ.get("METER_BACKEND_URL", "http://localhost:8200")
DEVICE_KEY = os.environ.get("METER_DEVICE_KEY", "meter-device-dev-key")
BACKEND_TIMEOUT = float(os.environ.get("METER_BACKEND_TIMEOUT", "30"))
SYNC_INTERVAL_SECONDS = int(os.environ.get("SYNC_INTERVAL_SECONDS", "300"))
SYNC_HISTORY_MONTHS = int(os.environ.get("SYNC_HISTORY_MONTHS", "12"))

DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    "postgresql://meter_api@localhost:5432/meter_sync",
)
BACKEND_PORT = int(os.environ.get("BACKEND_PORT", "8200"))

TARIFF: TariffProfile = get_tariff()
RETRY_POLICY: RetryPolicy = get_retry_policy()
