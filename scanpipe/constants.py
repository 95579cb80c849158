"""
ScanPipe Global Constants

Centralized location for queue names, cache namespaces and job step catalogs.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Tuple


def get_current_timestamp() -> datetime:
    """Get current timestamp with UTC timezone."""
    return datetime.now(timezone.utc)


# Application Constants
APP_NAME = "ScanPipe"
APP_VERSION = "0.1.0"


class QueueName(str, Enum):
    """Named queues served by the default deployment."""

    WALLET_SCAN = "wallet-scan"
    QUICK_SCAN = "quick-scan"
    BULK_SCAN = "bulk-scan"
    POSITION_REFRESH = "position-refresh"
    PORTFOLIO_ANALYTICS = "portfolio-analytics"


# Cache namespaces
SCANS_NAMESPACE = "scans"
ANALYTICS_NAMESPACE = "analytics"

# Job priorities (higher runs sooner)
QUICK_SCAN_PRIORITY = 10
DEFAULT_SCAN_PRIORITY = 5

# Ordered steps reported by each job family
SCAN_STEPS: Tuple[str, ...] = (
    "Validating wallet address",
    "Connecting to blockchain",
    "Scanning protocols",
    "Aggregating positions",
    "Calculating metrics",
    "Finalizing results",
)
ANALYTICS_STEPS: Tuple[str, ...] = (
    "Loading portfolio data",
    "Calculating performance metrics",
    "Analyzing risk factors",
    "Generating insights",
    "Preparing report",
)
REFRESH_STEPS: Tuple[str, ...] = (
    "Invalidating cached positions",
    "Refreshing position data",
    "Updating cache",
)

# Estimated durations per job family in milliseconds
ESTIMATED_DURATION_MS: Dict[str, int] = {
    "scan": 30000,
    "analytics": 60000,
    "refresh": 15000,
}
