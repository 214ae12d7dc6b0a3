"""Store health validation and offline rebuild."""

from listingstore.maintenance.health import HealthIssue, HealthReport, IssueKind, StoreHealthValidator
from listingstore.maintenance.rebuild import RebuildResult, RebuildStats, StoreRebuilder

__all__ = [
    "StoreHealthValidator",
    "HealthReport",
    "HealthIssue",
    "IssueKind",
    "StoreRebuilder",
    "RebuildResult",
    "RebuildStats",
]
