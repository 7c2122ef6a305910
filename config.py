"""
config.py
─────────
Tunable parameters for the driver dispatch service.

Every value can be overridden through the environment; `create_app()` copies
them into `app.config` so a test or deployment can override them again.
"""

import os
from typing import Final

# =============================================================================
# SERVER
# =============================================================================

HOST: str = os.environ.get("DISPATCH_HOST", "0.0.0.0")
PORT: int = int(os.environ.get("DISPATCH_PORT", "5000"))

# =============================================================================
# STORAGE
# =============================================================================

DB_PATH: str = os.environ.get("DISPATCH_DB_PATH", "data_base")
"""Directory holding the CSV tables (deliveries, batches, history, ...)."""

# =============================================================================
# BATCHING
# =============================================================================

BATCH_CAPACITY: int = int(os.environ.get("BATCH_CAPACITY", "3"))
"""Max deliveries a driver may hold in assigned/in_progress at once."""

DEFAULT_PAGE_SIZE: Final[int] = 10
MAX_PAGE_SIZE: Final[int] = 100

# =============================================================================
# ROUTING
# =============================================================================

MINUTES_PER_KM: float = float(os.environ.get("MINUTES_PER_KM", "2"))
"""Linear duration estimate used by the local optimizer (≈30 km/h)."""

DEFAULT_STRATEGY: Final[str] = "balanced"
"""Strategy used when a request does not name one (fastest | shortest | balanced)."""

# =============================================================================
# REMOTE MAPPING SERVICE
# =============================================================================

MAPS_API_KEY: str = os.environ.get("GOOGLE_MAPS_API_KEY", "")
MAPS_BASE_URL: str = os.environ.get(
    "MAPS_BASE_URL", "https://maps.googleapis.com/maps/api/directions/json"
)
MAPS_TIMEOUT_S: float = float(os.environ.get("MAPS_TIMEOUT_S", "8"))
"""Hard timeout for the remote optimizer call. No retries are made."""
