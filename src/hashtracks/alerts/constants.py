"""Shared alert type, severity and status definitions.

This module is the single source of truth for the values stored in the
alerts table and for the status transitions the alert service allows.
"""

from __future__ import annotations

# Alert types raised by source health analysis.
SCRAPE_FAILURE = "SCRAPE_FAILURE"
CONSECUTIVE_FAILURES = "CONSECUTIVE_FAILURES"
EVENT_COUNT_ANOMALY = "EVENT_COUNT_ANOMALY"
FIELD_FILL_DROP = "FIELD_FILL_DROP"
STRUCTURE_CHANGE = "STRUCTURE_CHANGE"
UNMATCHED_TAGS = "UNMATCHED_TAGS"
SOURCE_KENNEL_MISMATCH = "SOURCE_KENNEL_MISMATCH"

# Types whose context carries a list of kennel tags that repairs can fix.
TAG_ALERT_TYPES: tuple[str, ...] = (UNMATCHED_TAGS, SOURCE_KENNEL_MISMATCH)

# Severities, lowest first.
INFO = "INFO"
WARNING = "WARNING"
CRITICAL = "CRITICAL"

# Statuses.
OPEN = "OPEN"
ACKNOWLEDGED = "ACKNOWLEDGED"
SNOOZED = "SNOOZED"
RESOLVED = "RESOLVED"

# Alerts still needing attention (new detections update these in place).
ACTIVE_STATUSES: tuple[str, ...] = (OPEN, ACKNOWLEDGED)

# Allowed manual transitions. RESOLVED is terminal; a fresh detection after
# resolution opens a new alert instead. SNOOZED -> OPEN happens on expiry.
ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    OPEN: (ACKNOWLEDGED, SNOOZED, RESOLVED),
    ACKNOWLEDGED: (SNOOZED, RESOLVED),
    SNOOZED: (OPEN, RESOLVED),
    RESOLVED: (),
}

# Source health values.
HEALTH_HEALTHY = "HEALTHY"
HEALTH_DEGRADED = "DEGRADED"
HEALTH_FAILING = "FAILING"

# Repair log actions and results.
REPAIR_RESCRAPE = "rescrape"
REPAIR_CREATE_ALIAS = "create_alias"
REPAIR_CREATE_KENNEL = "create_kennel"
REPAIR_LINK_KENNEL = "link_kennel"
REPAIR_CREATE_ISSUE = "create_issue"
REPAIR_AUTO_FILE_ISSUE = "auto_file_issue"

REPAIR_SUCCESS = "success"
REPAIR_ERROR = "error"


def can_transition(current: str, new: str) -> bool:
    """Return True when an alert may move from ``current`` to ``new``."""
    return new in ALLOWED_TRANSITIONS.get(current, ())
